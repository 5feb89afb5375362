"""Validation for machine definitions and effect payloads.

Catches malformed machine replacements before they are swapped in, and
effect payloads that step outside what a node was granted.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import jsonschema
from pydantic import ValidationError

from dygram.graph.machine import MachineSnapshot
from dygram.graph.permissions import ContextPermission

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of a validation pass."""

    success: bool
    errors: list[str]

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(self.errors) if self.errors else ""


class MachineValidator:
    """
    Validates machine definitions and the payloads effects carry.

    Used by the meta manager before a replacement snapshot goes live and
    by the executor before a context write is applied.
    """

    def parse_machine(self, data: Any) -> tuple[ValidationResult, MachineSnapshot | None]:
        """
        Parse a raw machine dict into a snapshot.

        Returns:
            Tuple of (ValidationResult, snapshot or None)
        """
        if isinstance(data, MachineSnapshot):
            return ValidationResult(success=True, errors=[]), data
        if not isinstance(data, dict):
            return (
                ValidationResult(
                    success=False,
                    errors=[f"Machine must be an object, got {type(data).__name__}"],
                ),
                None,
            )
        try:
            snapshot = MachineSnapshot.from_dict(data)
        except ValidationError as e:
            errors = []
            for error in e.errors():
                field_path = ".".join(str(loc) for loc in error["loc"])
                errors.append(f"{field_path}: {error['msg']} (type: {error['type']})")
            return ValidationResult(success=False, errors=errors), None
        return ValidationResult(success=True, errors=[]), snapshot

    def validate_structure(self, snapshot: MachineSnapshot) -> ValidationResult:
        """Structural checks: a non-empty node set, unique names, resolvable references."""
        errors = []
        if not snapshot.nodes:
            errors.append("Machine has no nodes")
        errors.extend(snapshot.validate())
        return ValidationResult(success=len(errors) == 0, errors=errors)

    def validate_live_positions(
        self,
        snapshot: MachineSnapshot,
        positions: Iterable[tuple[str, str]],
    ) -> ValidationResult:
        """
        Every non-terminal path must still resolve in the replacement.

        Args:
            snapshot: Candidate replacement
            positions: (path_id, current_node) for each live path
        """
        errors = []
        for path_id, node_name in positions:
            if snapshot.get_node(node_name) is None:
                errors.append(f"Path '{path_id}' is at '{node_name}', which the update removes")
        return ValidationResult(success=len(errors) == 0, errors=errors)

    def validate_write(
        self,
        data: Any,
        context_name: str,
        permission: ContextPermission | None,
        store: bool = False,
    ) -> ValidationResult:
        """
        Check a write/store payload against the grant for a context node.

        Args:
            data: Payload the oracle supplied
            context_name: Target context node
            permission: Resolved permission (None = no grant at all)
            store: True for a store accessor, False for write
        """
        verb = "store" if store else "write"
        if permission is None:
            return ValidationResult(success=False, errors=[f"No access to '{context_name}'"])
        granted = permission.can_store if store else permission.can_write
        if not granted:
            return ValidationResult(
                success=False, errors=[f"No {verb} permission on '{context_name}'"]
            )
        if not isinstance(data, dict):
            return ValidationResult(
                success=False,
                errors=[f"{verb} payload must be an object, got {type(data).__name__}"],
            )

        errors = [
            f"Field '{key}' is not writable on '{context_name}'"
            for key in data
            if not permission.allows_field(key)
        ]
        return ValidationResult(success=len(errors) == 0, errors=errors)

    def validate_schema(
        self,
        data: Any,
        schema: dict[str, Any] | None,
    ) -> ValidationResult:
        """
        Validate data against a JSON schema.

        Args:
            data: Tool input or output to check
            schema: JSON schema (None or empty accepts anything)

        Returns:
            ValidationResult with one error per schema violation
        """
        if not schema:
            return ValidationResult(success=True, errors=[])

        errors = []
        validator = jsonschema.Draft7Validator(schema)

        for error in validator.iter_errors(data):
            path = ".".join(str(p) for p in error.path) if error.path else "root"
            errors.append(f"{path}: {error.message}")

        return ValidationResult(success=len(errors) == 0, errors=errors)

    def validate_tool_input(
        self,
        tool_input: dict[str, Any],
        schema: dict[str, Any] | None,
    ) -> ValidationResult:
        return self.validate_schema(tool_input, schema)

    def validate_tool_output(self, output: Any, schema: dict[str, Any] | None) -> ValidationResult:
        return self.validate_schema(output, schema)

    def check_schema(self, schema: dict[str, Any] | None) -> ValidationResult:
        """Check that a tool's declared schema is itself a valid JSON schema."""
        if not schema:
            return ValidationResult(success=True, errors=[])
        try:
            jsonschema.Draft7Validator.check_schema(schema)
        except jsonschema.SchemaError as e:
            return ValidationResult(success=False, errors=[f"Invalid schema: {e.message}"])
        return ValidationResult(success=True, errors=[])

    def validate_replacement(
        self,
        data: Any,
        positions: Iterable[tuple[str, str]] = (),
    ) -> tuple[ValidationResult, MachineSnapshot | None]:
        """
        Run all checks a machine replacement must pass.

        Returns:
            Tuple of (combined ValidationResult, parsed snapshot or None)
        """
        parsed, snapshot = self.parse_machine(data)
        if snapshot is None:
            return parsed, None

        all_errors = []
        all_errors.extend(self.validate_structure(snapshot).errors)
        all_errors.extend(self.validate_live_positions(snapshot, positions).errors)

        if all_errors:
            logger.warning(f"      ⚠ Machine replacement rejected: {'; '.join(all_errors)}")
            return ValidationResult(success=False, errors=all_errors), None
        return ValidationResult(success=True, errors=[]), snapshot
