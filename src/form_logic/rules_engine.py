from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

EMAIL_PATTERN = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
SENSITIVE_FIELD_MARKERS = ("password", "secret", "token", "key", "credential", "auth")
REASON_FIELDS_INVALID = "ERR_FIELDS_INVALID"
REASON_SUBMIT_CONDITIONS_UNMET = "ERR_SUBMIT_CONDITIONS_UNMET"

logger = logging.getLogger(__name__)


class FieldType(str, Enum):
    """Input kinds a form designer can place on a form."""

    TEXT = "text"
    EMAIL = "email"
    NUMBER = "number"
    TEXTAREA = "textarea"
    SELECT = "select"
    RADIO = "radio"
    CHECKBOX = "checkbox"
    DATE = "date"
    FILE = "file"
    URL = "url"
    TEL = "tel"


MULTI_VALUE_TYPES = (FieldType.CHECKBOX,)


class Condition(str, Enum):
    FILLED = "filled"
    EQUALS = "equals"
    CONTAINS = "contains"
    EMAIL_VALID = "email_valid"


class Action(str, Enum):
    SHOW_SUBMIT = "show_submit"
    SHOW_FIELD = "show_field"
    HIDE_FIELD = "hide_field"


class FormSchemaError(ValueError):
    """Raised when a field schema cannot be used for evaluation."""


@dataclass(slots=True, frozen=True)
class Field:
    id: str
    type: FieldType | str = FieldType.TEXT
    required: bool = False
    label: str = ""


@dataclass(slots=True, frozen=True)
class Rule:
    """One (condition, action) pair. Position in the rule list is significant."""

    field_id: str
    condition: Condition | str
    action: Action | str
    value: Any = None
    target_id: str | None = None


@dataclass(slots=True)
class EngineOutput:
    field_validity: dict[str, bool]
    visible_fields: list[str]
    can_submit: bool
    all_fields_valid: bool
    submit_gate_open: bool

    @property
    def invalid_fields(self) -> list[str]:
        return [field_id for field_id, valid in self.field_validity.items() if not valid]

    def to_dict(self) -> dict[str, Any]:
        return {
            "canSubmit": self.can_submit,
            "visibleFields": list(self.visible_fields),
            "fieldValidity": dict(self.field_validity),
            "invalidFields": self.invalid_fields,
        }


@dataclass(slots=True)
class FormTraceResult:
    output: EngineOutput
    steps: list[dict[str, Any]]


@dataclass(slots=True)
class SubmissionDecision:
    accepted: bool
    reason_code: str | None
    invalid_fields: list[str]
    data: dict[str, Any]


def _coerce_enum(enum_cls: type[Enum], raw_value: Any) -> Any:
    if isinstance(raw_value, enum_cls):
        return raw_value
    candidate = str(raw_value or "").strip()
    try:
        return enum_cls(candidate)
    except ValueError:
        return candidate


def _optional_str(raw_value: Any) -> str | None:
    if raw_value is None or raw_value == "":
        return None
    return str(raw_value)


def _as_flag(raw_value: Any) -> bool:
    if isinstance(raw_value, str):
        return raw_value.strip().lower() in ("true", "1", "yes")
    return bool(raw_value)


def parse_fields(raw_fields: Iterable[Field | Mapping[str, Any]] | None) -> list[Field]:
    fields: list[Field] = []
    seen: set[str] = set()
    for position, raw in enumerate(raw_fields or [], start=1):
        if isinstance(raw, Field):
            parsed = raw
        elif isinstance(raw, Mapping):
            field_id = _optional_str(raw.get("id"))
            if field_id is None:
                raise FormSchemaError(f"field {position}: missing id")
            parsed = Field(
                id=field_id,
                type=_coerce_enum(FieldType, raw.get("type") or raw.get("field_type") or FieldType.TEXT),
                required=_as_flag(raw.get("required")),
                label=str(raw.get("label") or ""),
            )
        else:
            raise FormSchemaError(f"field {position}: expected an object, got {type(raw).__name__}")

        if parsed.id in seen:
            raise FormSchemaError(f"field {position}: duplicate id '{parsed.id}'")
        seen.add(parsed.id)
        fields.append(parsed)
    return fields


def parse_rules(raw_rules: Iterable[Rule | Mapping[str, Any]] | None) -> list[Rule]:
    """Coerce rules loaded from untyped storage.

    Never raises: entries that are not objects are dropped, and unknown
    condition or action names are kept verbatim so they evaluate as
    non-matching rules later on.
    """
    rules: list[Rule] = []
    for position, raw in enumerate(raw_rules or [], start=1):
        if isinstance(raw, Rule):
            rules.append(raw)
            continue
        if not isinstance(raw, Mapping):
            logger.warning("rule_dropped", extra={"position": position, "raw_type": type(raw).__name__})
            continue
        rules.append(
            Rule(
                field_id=str(raw.get("fieldId", raw.get("field_id")) or ""),
                condition=_coerce_enum(Condition, raw.get("condition")),
                action=_coerce_enum(Action, raw.get("action")),
                value=raw.get("value"),
                target_id=_optional_str(raw.get("targetId", raw.get("target_id"))),
            )
        )
    return rules


def is_valid_email(text: Any) -> bool:
    if not isinstance(text, str):
        return False
    return EMAIL_PATTERN.fullmatch(text) is not None


def _is_empty(value: Any) -> bool:
    if value is None or value == "":
        return True
    return isinstance(value, (list, tuple)) and len(value) == 0


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(_as_text(item) for item in value)
    return str(value)


def _strict_equals(left: Any, right: Any) -> bool:
    if isinstance(left, (list, tuple, dict)) or isinstance(right, (list, tuple, dict)):
        return False
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    return type(left) is type(right) and left == right


def validate_field(field: Field, value: Any) -> bool:
    """Check a field's own required and format constraints, ignoring rules."""
    if _is_empty(value):
        return not field.required

    if field.type == FieldType.EMAIL:
        return is_valid_email(_as_text(value))

    if field.type in MULTI_VALUE_TYPES and isinstance(value, (list, tuple)):
        return len(value) > 0 or not field.required

    return True


def evaluate_condition(rule: Rule, form_data: Mapping[str, Any]) -> bool:
    value = form_data.get(rule.field_id)

    if rule.condition == Condition.FILLED:
        return value is not None and value != ""
    if rule.condition == Condition.EQUALS:
        return _strict_equals(value, rule.value)
    if rule.condition == Condition.CONTAINS:
        if _is_empty(value):
            return False
        return _as_text(rule.value) in _as_text(value)
    if rule.condition == Condition.EMAIL_VALID:
        return not _is_empty(value) and is_valid_email(_as_text(value))
    return False


def _rule_fires(rule: Rule, form_data: Mapping[str, Any], field_ids: set[str]) -> bool:
    if rule.field_id not in field_ids:
        return False
    return evaluate_condition(rule, form_data)


def _usable_target(rule: Rule, field_ids: set[str]) -> bool:
    return rule.target_id is not None and rule.target_id in field_ids


def compute_field_validity(fields: Iterable[Field], form_data: Mapping[str, Any]) -> dict[str, bool]:
    return {field.id: validate_field(field, form_data.get(field.id)) for field in fields}


def _submit_gate_open(rules: list[Rule], form_data: Mapping[str, Any], field_ids: set[str]) -> bool:
    submit_rules = [rule for rule in rules if rule.action == Action.SHOW_SUBMIT]
    if not submit_rules:
        return True
    return any(_rule_fires(rule, form_data, field_ids) for rule in submit_rules)


def compute_submittable(
    fields: Iterable[Field | Mapping[str, Any]],
    form_data: Mapping[str, Any],
    rules: Iterable[Rule | Mapping[str, Any]] | None = None,
) -> bool:
    parsed_fields = parse_fields(fields)
    parsed_rules = parse_rules(rules)
    field_ids = {field.id for field in parsed_fields}
    all_valid = all(compute_field_validity(parsed_fields, form_data).values())
    return all_valid and _submit_gate_open(parsed_rules, form_data, field_ids)


def _visible_field_ids(fields: list[Field], rules: list[Rule], form_data: Mapping[str, Any]) -> list[str]:
    # All hides resolve before any show, so a firing show_field rule always
    # wins over a firing hide_field rule for the same target.
    field_ids = {field.id for field in fields}
    visible = [field.id for field in fields]

    for rule in rules:
        if rule.action != Action.HIDE_FIELD:
            continue
        if _usable_target(rule, field_ids) and _rule_fires(rule, form_data, field_ids):
            visible = [field_id for field_id in visible if field_id != rule.target_id]

    for rule in rules:
        if rule.action != Action.SHOW_FIELD:
            continue
        if _usable_target(rule, field_ids) and _rule_fires(rule, form_data, field_ids):
            if rule.target_id not in visible:
                visible.append(rule.target_id)

    return visible


def compute_visibility(
    fields: Iterable[Field | Mapping[str, Any]],
    rules: Iterable[Rule | Mapping[str, Any]] | None,
    form_data: Mapping[str, Any],
) -> list[str]:
    return _visible_field_ids(parse_fields(fields), parse_rules(rules), form_data)


@dataclass(slots=True)
class FormRuleEngine:
    """Parsed form schema and rule set, reusable across value changes.

    The engine holds no evaluation state; every call to :meth:`evaluate`
    recomputes the whole output from the supplied values.
    """

    fields: list[Field]
    rules: list[Rule]

    @classmethod
    def from_schema(
        cls,
        fields: Iterable[Field | Mapping[str, Any]],
        rules: Iterable[Rule | Mapping[str, Any]] | None = None,
    ) -> FormRuleEngine:
        return cls(fields=parse_fields(fields), rules=parse_rules(rules))

    @property
    def field_ids(self) -> set[str]:
        return {field.id for field in self.fields}

    def evaluate(self, form_data: Mapping[str, Any] | None) -> EngineOutput:
        data = form_data or {}
        field_validity = compute_field_validity(self.fields, data)
        all_valid = all(field_validity.values())
        gate_open = _submit_gate_open(self.rules, data, self.field_ids)
        output = EngineOutput(
            field_validity=field_validity,
            visible_fields=_visible_field_ids(self.fields, self.rules, data),
            can_submit=all_valid and gate_open,
            all_fields_valid=all_valid,
            submit_gate_open=gate_open,
        )
        logger.debug(
            "form_evaluated",
            extra={
                "can_submit": output.can_submit,
                "invalid_fields": output.invalid_fields,
                "visible_count": len(output.visible_fields),
            },
        )
        return output

    def check_submission(self, form_data: Mapping[str, Any] | None) -> SubmissionDecision:
        data = form_data or {}
        output = self.evaluate(data)
        if output.can_submit:
            return SubmissionDecision(
                accepted=True,
                reason_code=None,
                invalid_fields=[],
                data={field.id: data[field.id] for field in self.fields if field.id in data},
            )

        reason_code = REASON_FIELDS_INVALID if not output.all_fields_valid else REASON_SUBMIT_CONDITIONS_UNMET
        logger.info(
            "submission_rejected",
            extra={
                "reason_code": reason_code,
                "invalid_fields": output.invalid_fields,
                "snapshot": {
                    field_id: _safe_snapshot_value(field_id, data.get(field_id))
                    for field_id in output.invalid_fields
                },
            },
        )
        return SubmissionDecision(
            accepted=False,
            reason_code=reason_code,
            invalid_fields=output.invalid_fields,
            data={},
        )

    def trace(self, form_data: Mapping[str, Any] | None) -> FormTraceResult:
        data = form_data or {}
        field_ids = self.field_ids
        steps: list[dict[str, Any]] = []

        for field in self.fields:
            value = data.get(field.id)
            steps.append(
                {
                    "phase": "field",
                    "field_id": field.id,
                    "type": _enum_value(field.type),
                    "required": field.required,
                    "value": _safe_snapshot_value(field.id, value),
                    "valid": validate_field(field, value),
                }
            )

        for index, rule in enumerate(self.rules, start=1):
            if rule.action == Action.SHOW_SUBMIT and rule.field_id not in field_ids:
                steps.append(_ignored_step(index, rule, "unknown_field"))
            elif rule.action == Action.SHOW_SUBMIT:
                steps.append(_rule_step("submit_rule", index, rule, _rule_fires(rule, data, field_ids)))
            elif rule.action not in (Action.HIDE_FIELD, Action.SHOW_FIELD):
                steps.append(_ignored_step(index, rule, "unknown_action"))

        for action, effect in ((Action.HIDE_FIELD, "hidden"), (Action.SHOW_FIELD, "shown")):
            for index, rule in enumerate(self.rules, start=1):
                if rule.action != action:
                    continue
                if rule.target_id is None:
                    steps.append(_ignored_step(index, rule, "missing_target"))
                    continue
                if rule.target_id not in field_ids:
                    steps.append(_ignored_step(index, rule, "unknown_target"))
                    continue
                if rule.field_id not in field_ids:
                    steps.append(_ignored_step(index, rule, "unknown_field"))
                    continue
                fired = _rule_fires(rule, data, field_ids)
                step = _rule_step("visibility_rule", index, rule, fired)
                step["target_id"] = rule.target_id
                step["effect"] = effect if fired else "none"
                steps.append(step)

        return FormTraceResult(output=self.evaluate(data), steps=steps)


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _rule_step(phase: str, index: int, rule: Rule, fired: bool) -> dict[str, Any]:
    return {
        "phase": phase,
        "rule_index": index,
        "field_id": rule.field_id,
        "condition": _enum_value(rule.condition),
        "action": _enum_value(rule.action),
        "fired": fired,
    }


def _ignored_step(index: int, rule: Rule, reason: str) -> dict[str, Any]:
    logger.debug("rule_skipped", extra={"rule_index": index, "reason": reason})
    return {
        "phase": "ignored",
        "rule_index": index,
        "field_id": rule.field_id,
        "action": _enum_value(rule.action),
        "reason": reason,
    }


def _contains_sensitive_marker(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in SENSITIVE_FIELD_MARKERS)


def _safe_snapshot_value(field_id: str, value: Any) -> Any:
    if _contains_sensitive_marker(field_id):
        return "<redacted>"

    if value is None or isinstance(value, bool | int | float):
        return value

    if isinstance(value, str):
        return value if len(value) <= 160 else f"{value[:157]}..."

    if isinstance(value, (list, tuple)):
        if len(value) > 10:
            return f"<sequence len={len(value)}>"
        if all(item is None or isinstance(item, bool | int | float | str) for item in value):
            return [_safe_snapshot_value(field_id, item) for item in value]
        return f"<sequence len={len(value)}>"

    if isinstance(value, dict):
        return f"<mapping keys={len(value)}>"

    return f"<object type={type(value).__name__}>"


def evaluate_form(
    fields: Iterable[Field | Mapping[str, Any]],
    form_data: Mapping[str, Any] | None,
    rules: Iterable[Rule | Mapping[str, Any]] | None = None,
) -> EngineOutput:
    engine = FormRuleEngine.from_schema(fields, rules)
    return engine.evaluate(form_data)


def trace_form_evaluation(
    fields: Iterable[Field | Mapping[str, Any]],
    form_data: Mapping[str, Any] | None,
    rules: Iterable[Rule | Mapping[str, Any]] | None = None,
) -> FormTraceResult:
    engine = FormRuleEngine.from_schema(fields, rules)
    return engine.trace(form_data)


def check_submission(
    fields: Iterable[Field | Mapping[str, Any]],
    form_data: Mapping[str, Any] | None,
    rules: Iterable[Rule | Mapping[str, Any]] | None = None,
) -> SubmissionDecision:
    engine = FormRuleEngine.from_schema(fields, rules)
    return engine.check_submission(form_data)


def load_form_payload(payload: Any) -> tuple[FormRuleEngine, dict[str, Any]]:
    """Build an engine and the respondent's values from a host payload.

    Raises ``ValueError`` (or ``FormSchemaError``) when the payload shape
    cannot be evaluated.
    """
    if not isinstance(payload, dict):
        raise ValueError("payload must be a JSON object")
    fields = payload.get("fields", [])
    rules = payload.get("rules") or []
    form_data = payload.get("formData") or {}
    if not isinstance(fields, list):
        raise ValueError("fields must be a list")
    if not isinstance(rules, list):
        raise ValueError("rules must be a list")
    if not isinstance(form_data, dict):
        raise ValueError("formData must be an object")
    return FormRuleEngine.from_schema(fields, rules), form_data
