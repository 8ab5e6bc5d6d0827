"""Validation utilities for nestlambda project files."""

from pydantic import ValidationError as PydanticValidationError

# Friendlier wording for the pydantic error types users hit most often
ERROR_HINTS: dict[str, str] = {
    "extra_forbidden": "unknown field (check spelling and indentation)",
    "missing": "required field is missing",
}


def flatten_pydantic_errors(exc: PydanticValidationError) -> list[str]:
    """Flatten a pydantic ValidationError into one message per field.

    Args:
        exc: Pydantic ValidationError raised while building ProjectConfig

    Returns:
        Human-readable messages such as
        ``Field 'function.memory': Input should be less than or equal to 10240``

    Example:
        >>> from nestlambda.models.deployment import ProjectConfig
        >>> try:
        ...     ProjectConfig(service="api", transport="ftp")
        ... except PydanticValidationError as e:
        ...     flatten_pydantic_errors(e)[0].startswith("Field 'transport'")
        True
    """
    errors: list[str] = []

    for error in exc.errors():
        loc = error.get("loc", ())
        field_path = ".".join(str(item) for item in loc) if loc else "project"
        error_type = error.get("type", "")
        msg = ERROR_HINTS.get(error_type) or error.get("msg", "Unknown error")

        if error_type in ("value_error", "enum"):
            input_val = error.get("input")
            errors.append(f"Field '{field_path}': {msg} (received: {input_val!r})")
        else:
            errors.append(f"Field '{field_path}': {msg}")

    return errors if errors else ["Validation failed with unknown error"]
