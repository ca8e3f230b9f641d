from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from .app import create_form_logic_app
from .rules_engine import load_form_payload


def _evaluate_payload(path: Path, trace: bool) -> int:
    try:
        engine, form_data = load_form_payload(json.loads(path.read_text(encoding="utf-8")))
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    if trace:
        traced = engine.trace(form_data)
        result = {**traced.output.to_dict(), "steps": traced.steps}
    else:
        result = engine.evaluate(form_data).to_dict()
    print(json.dumps(result, indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Evaluate form rules or run the form-logic service")
    subcommands = parser.add_subparsers(dest="command", required=True)

    serve = subcommands.add_parser("serve", help="run the HTTP service")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    evaluate = subcommands.add_parser("evaluate", help="evaluate a JSON payload of fields, formData and rules")
    evaluate.add_argument("payload", type=Path)
    evaluate.add_argument("--trace", action="store_true", help="include per-rule evaluation steps")

    args = parser.parse_args(argv)

    if args.command == "evaluate":
        return _evaluate_payload(args.payload, args.trace)

    app = create_form_logic_app()
    app.run(host=args.host, port=args.port, debug=False)
    return 0


if __name__ == "__main__":
    sys.exit(main())
