"""
JSON-schema validation for tool inputs, outputs and definitions.

Validation never raises: every problem is reported as one
"<path> <message>" string in ValidationResult.errors. Before checking,
data is coerced towards the schema (numeric strings to numbers, scalars to
strings, "true"/"false" to booleans), declared defaults are filled in and
undeclared object properties are stripped.
"""

import copy
import logging
import re
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator, FormatChecker, validators
from jsonschema.exceptions import SchemaError, ValidationError

from sophia.tool_registry.models import DEPENDENCY_TYPE_ALIASES, SEMVER_PATTERN, DependencyType, ValidationResult

logger = logging.getLogger(__name__)


TOOL_NAME_PATTERN = re.compile(r"^[@a-zA-Z][\w.\-]*$")
DEPENDENCY_STRING_PATTERN = re.compile(r"^(@?[a-zA-Z][\w\-]*/)?[a-zA-Z][\w.\-]*@\d+\.\d+\.\d+$")
FILE_PATH_PATTERN = re.compile(r"^(?:[a-zA-Z]:|[\\/])?([^\\/]+[\\/])*[^\\/]*$")
COMMAND_PATTERN = re.compile(r"^[a-zA-Z0-9_\-.]+(\s+[a-zA-Z0-9_\-.]+)*$")

DEPENDENCY_TYPES = {member.value for member in DependencyType} | set(DEPENDENCY_TYPE_ALIASES)


def _pattern_format(pattern: re.Pattern):
    def check(instance: Any) -> bool:
        if not isinstance(instance, str):
            return True
        return pattern.match(instance) is not None
    return check


def _dependency_type_keyword(validator, enabled, instance, schema):
    if enabled and instance not in DEPENDENCY_TYPES:
        yield ValidationError(
            f"{instance!r} is not a valid dependency type (expected one of {', '.join(sorted(DEPENDENCY_TYPES))})"
        )


def _tool_category_keyword(validator, allowed, instance, schema):
    if instance not in allowed:
        yield ValidationError(f"{instance!r} is not a known tool category")


ToolSchemaValidator = validators.extend(
    Draft7Validator,
    {
        "dependencyType": _dependency_type_keyword,
        "toolCategory": _tool_category_keyword,
    },
)


METADATA_SCHEMA = {
    "type": "object",
    "properties": {
        "author": {"type": ["string", "null"]},
        "tags": {"type": "array", "items": {"type": "string"}},
        "category": {"type": ["string", "null"]},
        "last_used": {"type": ["string", "null"]},
        "last_modified": {"type": ["string", "null"]},
        "use_count": {"type": "integer", "minimum": 0},
        "metrics": {"type": "object"},
        "version": {"type": "string", "format": "semver"},
    },
    "additionalProperties": False,
}

DEPENDENCIES_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["name", "version", "type"],
        "properties": {
            "name": {"type": "string", "format": "tool-name"},
            "version": {"type": "string", "format": "semver"},
            "type": {"type": "string", "dependencyType": True},
            "optional": {"type": "boolean"},
        },
    },
}


class SchemaValidator:
    """
    Validates JSON data against JSON-Schema definitions.
    """

    def __init__(self):
        self.format_checker = FormatChecker()
        self._add_custom_formats()
        self._compiled: Dict[str, Any] = {}

    def _add_custom_formats(self) -> None:
        formats = {
            "semver": SEMVER_PATTERN,
            "tool-name": TOOL_NAME_PATTERN,
            "dependency-string": DEPENDENCY_STRING_PATTERN,
            "file-path": FILE_PATH_PATTERN,
            "command": COMMAND_PATTERN,
        }
        for name, pattern in formats.items():
            self.format_checker.checks(name)(_pattern_format(pattern))

    def validate_schema(self, schema: Any) -> ValidationResult:
        """Check that a schema itself is well formed."""
        if not isinstance(schema, (dict, bool)):
            return ValidationResult(is_valid=False, errors=["schema must be an object"])
        try:
            ToolSchemaValidator.check_schema(schema)
        except SchemaError as e:
            path = "/".join(str(part) for part in e.path) or "schema"
            return ValidationResult(is_valid=False, errors=[f"{path} {e.message}"])
        return ValidationResult(is_valid=True)

    def validate(self, data: Any, schema: Any, schema_id: Optional[str] = None,
                 coerce: bool = True) -> ValidationResult:
        """
        Validate data against a schema.

        Args:
            data: The data to check (not modified)
            schema: JSON schema
            schema_id: Optional cache key for the compiled validator
            coerce: Apply type coercion, defaults and property stripping first

        Returns:
            ValidationResult with coerced_data set to the (coerced) data
        """
        try:
            validator = self._get_validator(schema, schema_id)
            candidate = self._coerce(copy.deepcopy(data), schema) if coerce else data

            errors = sorted(validator.iter_errors(candidate), key=lambda e: list(e.absolute_path))
            if errors:
                messages = [self._format_error(error) for error in errors]
                return ValidationResult(is_valid=False, errors=messages, coerced_data=candidate)

            return ValidationResult(is_valid=True, coerced_data=candidate)
        except SchemaError as e:
            return ValidationResult(is_valid=False, errors=[f"invalid schema: {e.message}"], coerced_data=data)
        except Exception as e:
            logger.warning(f"Schema validation failed unexpectedly: {e}")
            return ValidationResult(is_valid=False, errors=[str(e)], coerced_data=data)

    def validate_tool_metadata(self, metadata: Dict[str, Any]) -> ValidationResult:
        """Validate a tool metadata mapping (JSON form)."""
        return self.validate(metadata, METADATA_SCHEMA, schema_id="__tool_metadata__", coerce=False)

    def validate_dependencies(self, dependencies: List[Dict[str, Any]]) -> ValidationResult:
        """Validate a list of dependency mappings (JSON form)."""
        return self.validate(dependencies, DEPENDENCIES_SCHEMA, schema_id="__dependencies__", coerce=False)

    def clear_cache(self) -> None:
        """Drop compiled validators."""
        self._compiled.clear()

    def _get_validator(self, schema: Any, schema_id: Optional[str]):
        if schema_id and schema_id in self._compiled:
            return self._compiled[schema_id]

        if not isinstance(schema, (dict, bool)):
            raise SchemaError("schema must be an object")
        ToolSchemaValidator.check_schema(schema)
        validator = ToolSchemaValidator(schema, format_checker=self.format_checker)

        if schema_id:
            self._compiled[schema_id] = validator
        return validator

    @staticmethod
    def _format_error(error: ValidationError) -> str:
        path = "/" + "/".join(str(part) for part in error.absolute_path) if error.absolute_path else "input"
        return f"{path} {error.message}"

    def _coerce(self, data: Any, schema: Any) -> Any:
        if not isinstance(schema, dict):
            return data

        expected = schema.get("type")
        if expected is not None:
            data = self._coerce_type(data, expected)

        if isinstance(data, dict):
            properties = schema.get("properties")
            if isinstance(properties, dict):
                data = self._coerce_object(data, schema, properties)

        if isinstance(data, list) and isinstance(schema.get("items"), dict):
            data = [self._coerce(item, schema["items"]) for item in data]

        return data

    def _coerce_object(self, data: Dict[str, Any], schema: Dict[str, Any],
                       properties: Dict[str, Any]) -> Dict[str, Any]:
        additional = schema.get("additionalProperties")
        patterns = [re.compile(p) for p in schema.get("patternProperties", {})]
        result = {}

        for key, value in data.items():
            if key in properties:
                result[key] = self._coerce(value, properties[key])
            elif additional is True or isinstance(additional, dict):
                result[key] = self._coerce(value, additional) if isinstance(additional, dict) else value
            elif any(p.search(key) for p in patterns):
                result[key] = value
            # anything else is undeclared and dropped

        for key, prop_schema in properties.items():
            if key not in result and isinstance(prop_schema, dict) and "default" in prop_schema:
                result[key] = copy.deepcopy(prop_schema["default"])

        return result

    def _coerce_type(self, value: Any, expected: Any) -> Any:
        types = expected if isinstance(expected, list) else [expected]
        if any(_matches_type(value, t) for t in types):
            return value
        for target in types:
            coerced = _convert(value, target)
            if coerced is not _NO_COERCION:
                return coerced
        return value


_NO_COERCION = object()


def _matches_type(value: Any, json_type: str) -> bool:
    if json_type == "string":
        return isinstance(value, str)
    if json_type == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if json_type == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if json_type == "boolean":
        return isinstance(value, bool)
    if json_type == "null":
        return value is None
    if json_type == "array":
        return isinstance(value, list)
    if json_type == "object":
        return isinstance(value, dict)
    return False


def _convert(value: Any, json_type: str) -> Any:
    if json_type in ("number", "integer"):
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, str):
            text = value.strip()
            try:
                number = int(text)
            except ValueError:
                try:
                    number = float(text)
                except ValueError:
                    return _NO_COERCION
            if json_type == "integer" and isinstance(number, float):
                return int(number) if number.is_integer() else _NO_COERCION
            return number
        if json_type == "integer" and isinstance(value, float) and value.is_integer():
            return int(value)
        return _NO_COERCION

    if json_type == "string":
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        return _NO_COERCION

    if json_type == "boolean":
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        if isinstance(value, (int, float)) and value in (0, 1):
            return bool(value)
        return _NO_COERCION

    return _NO_COERCION
