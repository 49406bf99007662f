from __future__ import annotations

import re
import secrets
from uuid import UUID

from tenantvault.core.errors import InvalidIdentifierError, ValidationError


# Allow-list for anything interpolated into DDL as an identifier.
_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*$")
_UNSAFE_CHARS_RE = re.compile(r"[^a-z0-9]+")

POSTGRES_IDENTIFIER_MAX = 63
SCHEMA_PREFIX_HEAD = "tenant_"
SCHEMA_SUFFIX_HEX_CHARS = 12


def sanitize_identifier(raw: str) -> str:
    # Lowercase, collapse every run of unsafe characters into "_" and trim the edges.
    return _UNSAFE_CHARS_RE.sub("_", raw.lower()).strip("_")


def validate_identifier(value: str, *, max_length: int = POSTGRES_IDENTIFIER_MAX) -> str:
    if not value or len(value) > max_length or not _IDENTIFIER_RE.match(value):
        raise InvalidIdentifierError(f"Invalid SQL identifier: {value!r}")
    return value


def quote_identifier(value: str) -> str:
    # Quote only after validation so the quoted form can never contain a quote.
    return f'"{validate_identifier(value)}"'


def derive_schema_prefix(
    name: str,
    *,
    max_length: int = POSTGRES_IDENTIFIER_MAX,
    suffix: str | None = None,
) -> str:
    # tenant_<sanitized name>_<random hex>; the suffix keeps similar names apart.
    suffix = suffix or secrets.token_hex(SCHEMA_SUFFIX_HEX_CHARS // 2)
    max_length = min(max_length, POSTGRES_IDENTIFIER_MAX)
    room = max_length - len(SCHEMA_PREFIX_HEAD) - len(suffix) - 1
    if room < 1:
        raise InvalidIdentifierError(f"Schema prefix length {max_length} leaves no room for the tenant name")
    base = sanitize_identifier(name)[:room].rstrip("_") or "t"
    return validate_identifier(f"{SCHEMA_PREFIX_HEAD}{base}_{suffix}", max_length=max_length)


def require_tenant_id(tenant_id: str | None) -> str:
    # Tenant ids are embedded in RLS policies; only canonical UUID text is accepted.
    if not tenant_id:
        raise ValidationError("tenant_id is required")
    try:
        return str(UUID(str(tenant_id)))
    except ValueError as exc:
        raise ValidationError(f"tenant_id is not a valid UUID: {tenant_id!r}") from exc
