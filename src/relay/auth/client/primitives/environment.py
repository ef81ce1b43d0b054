"""Credential overrides supplied through environment variables.

Lets CI jobs and other unattended runs inject client information and tokens
vended elsewhere (a secrets manager, a prior local login) instead of relying
on the on-disk store and a browser.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from typing import Mapping, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

CLIENT_INFO_ENV = "MCP_REMOTE_CLIENT_INFO"
TOKENS_ENV = "MCP_REMOTE_TOKENS"
BASE64_SUFFIX = "_BASE64"

ModelT = TypeVar("ModelT", bound=BaseModel)


def read_override(
    name: str,
    schema: type[ModelT],
    environ: Mapping[str, str] | None = None,
) -> ModelT | None:
    """Read a JSON artifact from ``<name>_BASE64`` or ``<name>``.

    The base64 form is checked first. A variable that is set but cannot be
    decoded or validated is logged as a warning and skipped.

    Args:
        name: Logical variable name, e.g. ``MCP_REMOTE_TOKENS``
        schema: Model the JSON must validate against
        environ: Environment mapping, defaults to ``os.environ``

    Returns:
        The validated artifact, or None if no usable variable is set
    """
    environ = os.environ if environ is None else environ

    encoded_name = f"{name}{BASE64_SUFFIX}"
    encoded = environ.get(encoded_name)
    if encoded:
        try:
            decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            logger.warning(f"Ignoring {encoded_name}: not valid base64 ({e})")
        else:
            artifact = _parse(encoded_name, decoded, schema)
            if artifact is not None:
                return artifact

    plain = environ.get(name)
    if plain:
        return _parse(name, plain, schema)

    return None


def _parse(variable: str, content: str, schema: type[ModelT]) -> ModelT | None:
    try:
        artifact = schema.model_validate_json(content)
    except ValidationError as e:
        logger.warning(
            f"Ignoring {variable}: does not match {schema.__name__} "
            f"({e.error_count()} errors)"
        )
        return None

    logger.debug(f"Loaded {schema.__name__} from {variable}")
    return artifact
