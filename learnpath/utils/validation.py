"""
Schema validation utilities for persisted LearnPath records.

Provides JSON Schema validation with clear error messages, plus the
domain checks a schema cannot express:
- Unique step ids and orders, same-path prerequisites, acyclic step graph
- Enrollment aggregates consistent with their snapshot
- StepProgress percentage consistent with status
- Optional repair of unknown keys and missing meta, with repair tracking
"""

import json
from collections import Counter
from copy import deepcopy
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from jsonschema import Draft7Validator, FormatChecker
from jsonschema import ValidationError as SchemaError

from ..config import config
from ..errors import ValidationError
from .step_graph import check_acyclic_and_toposort, find_cycle_members


class ValidationResult:
    """
    Result of a validation attempt.

    Attributes:
        valid: Whether data passed validation
        errors: List of error messages
        data: The validated data (may be modified if repair was attempted)
        repairs: List of repairs applied (for transparency)
    """

    def __init__(
        self,
        valid: bool,
        errors: list[str],
        data: Any = None,
        repairs: Optional[list[str]] = None,
    ):
        self.valid = valid
        self.errors = errors
        self.data = data
        self.repairs = repairs or []

    def __bool__(self) -> bool:
        return self.valid

    def __str__(self) -> str:
        if self.valid:
            msg = "Validation passed"
            if self.repairs:
                msg += f" (with {len(self.repairs)} repair(s))"
            return msg
        return f"Validation failed with {len(self.errors)} error(s):\n" + "\n".join(
            f"  - {error}" for error in self.errors
        )

    def raise_if_invalid(self, kind: str):
        """Raise the package ValidationError carrying every message."""
        if not self.valid:
            raise ValidationError(f"Invalid {kind} record", self.errors)


class SchemaValidator:
    """
    JSON Schema validator with optional repair.

    Usage:
        validator = SchemaValidator("path/to/schema.json")
        result = validator.validate(data)
        if not result:
            print(result.errors)
    """

    def __init__(self, schema_path: Path | str):
        self.schema_path = Path(schema_path)
        with open(self.schema_path, "r") as f:
            self.schema = json.load(f)
        self.validator = Draft7Validator(self.schema, format_checker=FormatChecker())

    def validate(self, data: dict, auto_repair: bool = False) -> ValidationResult:
        """
        Validate data against the schema, then run domain checks.

        Args:
            data: Record to validate
            auto_repair: If True, strip unknown keys and fill missing meta first

        Returns:
            ValidationResult with validation status and any errors
        """
        repairs: list[str] = []
        if auto_repair:
            data, repairs = self._attempt_repair(data)

        errors = [self._format_error(e) for e in self.validator.iter_errors(data)]
        if not errors:
            errors = self.domain_errors(data)

        return ValidationResult(valid=not errors, errors=errors, data=data, repairs=repairs)

    def domain_errors(self, data: dict) -> list[str]:
        """Checks beyond the schema. Only called on schema-valid data."""
        return []

    def _format_error(self, error: SchemaError) -> str:
        path = " -> ".join(str(p) for p in error.path) if error.path else "root"
        validator_name = getattr(error, "validator", "unknown")
        schema_path = "/".join(str(p) for p in error.schema_path)
        return (
            f"At '{path}': {error.message} "
            f"[validator={validator_name}, schema_path=/{schema_path}]"
        )

    def _attempt_repair(self, data: dict) -> tuple[dict, list[str]]:
        repaired = deepcopy(data)
        repairs: list[str] = []
        self._strip_additional_props(repaired, self.schema, repairs)

        if "meta" in self.schema.get("properties", {}):
            meta = repaired.setdefault("meta", {})
            if "schema_version" not in meta:
                meta["schema_version"] = 1
                repairs.append("Added meta.schema_version = 1")
            if "created_at" not in meta:
                timestamp = datetime.now(timezone.utc).isoformat()
                meta["created_at"] = timestamp
                repairs.append(f"Added meta.created_at = {timestamp}")

        return repaired, repairs

    def _strip_additional_props(
        self, obj: Any, schema: dict, repairs: list[str], path: str = "root"
    ):
        """Recursively remove keys not allowed by ``additionalProperties: false``."""
        if not isinstance(schema, dict):
            return

        if isinstance(obj, dict) and "properties" in schema:
            allowed = set(schema.get("properties", {}).keys())
            if schema.get("additionalProperties") is False:
                for k in [k for k in list(obj.keys()) if k not in allowed]:
                    obj.pop(k, None)
                    repairs.append(f"Removed unknown key '{k}' at {path}")
            for k, subschema in schema.get("properties", {}).items():
                if k in obj:
                    self._strip_additional_props(obj[k], subschema, repairs, f"{path}.{k}")

        if isinstance(obj, list) and "items" in schema:
            for i, item in enumerate(obj):
                self._strip_additional_props(item, schema["items"], repairs, f"{path}[{i}]")


class PathValidator(SchemaValidator):
    """Validates serialized paths, including the step graph."""

    def __init__(self, schema_path: Optional[Path | str] = None):
        super().__init__(schema_path or config.paths.schema("path"))

    def domain_errors(self, data: dict) -> list[str]:
        errors = []
        path_id = data["id"]
        steps = data.get("steps", [])

        duplicate_ids = self._find_duplicates(s["id"] for s in steps)
        if duplicate_ids:
            errors.append(f"Duplicate step IDs found: {', '.join(sorted(duplicate_ids))}")

        duplicate_orders = self._find_duplicates(s["order"] for s in steps)
        if duplicate_orders:
            orders = ", ".join(str(o) for o in sorted(duplicate_orders))
            errors.append(f"Duplicate step orders found: {orders}")

        step_ids = {s["id"] for s in steps}
        for step in steps:
            if step["path_id"] != path_id:
                errors.append(
                    f"Step '{step['id']}' belongs to path '{step['path_id']}', not '{path_id}'"
                )
            for prereq_id in step.get("prerequisite_ids", []):
                if prereq_id == step["id"]:
                    errors.append(f"Step '{step['id']}' lists itself as a prerequisite")
                elif prereq_id not in step_ids:
                    errors.append(
                        f"Step '{step['id']}' references prerequisite '{prereq_id}' "
                        f"outside path '{path_id}'"
                    )

        if errors:
            return errors

        graph = {s["id"]: s.get("prerequisite_ids", []) for s in steps}
        order_of = {s["id"]: s["order"] for s in steps}
        acyclic, _ = check_acyclic_and_toposort(graph, sort_key=lambda sid: order_of[sid])
        if not acyclic:
            members = ", ".join(sorted(find_cycle_members(graph)))
            errors.append(f"Prerequisite graph has a cycle (steps form a loop): {members}")

        if data.get("total_steps") is not None and data["total_steps"] != len(steps):
            errors.append(
                f"total_steps is {data['total_steps']} but path has {len(steps)} step(s)"
            )
        return errors

    @staticmethod
    def _find_duplicates(values) -> set:
        counts = Counter(values)
        return {v for v, c in counts.items() if c > 1}


class EnrollmentValidator(SchemaValidator):
    """Validates serialized enrollments against their derived aggregate."""

    def __init__(self, schema_path: Optional[Path | str] = None):
        super().__init__(schema_path or config.paths.schema("enrollment"))

    def domain_errors(self, data: dict) -> list[str]:
        errors = []
        snapshot = data["total_steps_snapshot"]
        completed = data["completed_steps"]
        pct = data["progress_percentage"]

        if data["status"] == "completed":
            if pct != 100:
                errors.append(f"Completed enrollment must be at 100%, found {pct}")
            return errors

        expected = 0.0 if snapshot == 0 else min(100.0, completed / snapshot * 100.0)
        if abs(expected - pct) > 1e-6:
            errors.append(
                f"progress_percentage {pct} does not match "
                f"{completed}/{snapshot} completed steps ({expected:.2f})"
            )
        return errors


class StepProgressValidator(SchemaValidator):
    """Validates serialized step progress records."""

    def __init__(self, schema_path: Optional[Path | str] = None):
        super().__init__(schema_path or config.paths.schema("step_progress"))

    def domain_errors(self, data: dict) -> list[str]:
        errors = []
        if data["status"] == "completed" and data["percentage"] != 100:
            errors.append(
                f"Completed step '{data['step_id']}' must be at 100%, found {data['percentage']}"
            )
        if data["status"] == "not_started" and data["percentage"] > 0:
            errors.append(
                f"Step '{data['step_id']}' is not started but reports {data['percentage']}%"
            )
        return errors


def validate_path(data: dict, auto_repair: bool = False) -> ValidationResult:
    """Convenience wrapper around PathValidator."""
    return PathValidator().validate(data, auto_repair=auto_repair)


def validate_enrollment(data: dict) -> ValidationResult:
    """Convenience wrapper around EnrollmentValidator."""
    return EnrollmentValidator().validate(data)


def validate_step_progress(data: dict) -> ValidationResult:
    """Convenience wrapper around StepProgressValidator."""
    return StepProgressValidator().validate(data)
