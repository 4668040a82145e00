"""Environment variable loaders for configuration."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

from .errors import MissingConfigurationError

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

ENV_REFERENCE_PREFIX = "env:"


def require_env_vars(names: Sequence[str]) -> dict[str, str]:
    """Return the given environment variables or raise if any are missing/blank."""

    missing: list[str] = []
    values: dict[str, str] = {}
    for name in names:
        value = os.getenv(name)
        if value is None or not value.strip():
            missing.append(name)
            continue
        values[name] = value

    if missing:
        missing_list = ", ".join(sorted(missing))
        raise MissingConfigurationError(f"Missing configuration for: {missing_list}")

    return values


def require_env_var(name: str) -> str:
    """Return a required environment variable by name."""

    return require_env_vars([name])[name]


def resolve_env_references(options: Mapping[str, object]) -> dict[str, object]:
    """Replace ``env:NAME`` string values with the named environment variable.

    All references are resolved in one pass so a missing-configuration error
    lists every absent variable at once.
    """

    references = {
        key: value.removeprefix(ENV_REFERENCE_PREFIX).strip()
        for key, value in options.items()
        if isinstance(value, str) and value.startswith(ENV_REFERENCE_PREFIX)
    }
    values = require_env_vars(tuple(references.values())) if references else {}
    resolved = dict(options)
    for key, env_name in references.items():
        resolved[key] = values[env_name]
    return resolved
