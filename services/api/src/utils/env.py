"""
Declarative environment variables.

Each setting is an ``EnvVarSpec``; ``parse`` reads and converts one, and
``validate`` checks a list of them at startup so a misconfigured process
fails before serving traffic.
"""

import os
from typing import Any, Callable, Optional, Tuple

from pydantic import BaseModel, ValidationError, create_model

from . import log

logger = log.get_logger(__name__)


class EnvVarSpec(BaseModel):
    id: str
    default: Optional[str] = None
    parse: Callable[[str], Any] = lambda x: x
    type: Tuple[Any, Any] = (str, ...)
    is_optional: bool = False
    is_secret: bool = False


def parse(var: EnvVarSpec) -> Any:
    value = os.environ.get(var.id, var.default)
    if value is None or value == "":
        if var.is_optional:
            return None
        raise ValueError(f"Missing required environment variable {var.id}")
    return var.parse(value)


def validate(env_vars: list) -> bool:
    """Parse every spec and type-check the results; log each failure."""
    ok = True
    values = {}
    fields = {}
    for var in env_vars:
        try:
            values[var.id] = parse(var)
        except Exception as e:
            shown = "<secret>" if var.is_secret else os.environ.get(var.id, var.default)
            logger.error(f"Invalid value for {var.id} ({shown}): {e}")
            ok = False
            continue
        field_type, field_default = var.type
        fields[var.id] = (Optional[field_type], None) if var.is_optional else (field_type, field_default)

    if not ok:
        return False

    try:
        create_model("EnvVars", **fields)(**values)
    except ValidationError as e:
        for error in e.errors():
            logger.error(f"Invalid environment variable {error['loc'][0]}: {error['msg']}")
        return False
    return True
