"""NFS export specification model."""
import re
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_EXPORT_NAME = "default"
DEFAULT_CLIENTS = "*"
DEFAULT_OPTIONS = "rw,sync,no_subtree_check"

_NAME_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$')
_CLIENT_RE = re.compile(r'^[A-Za-z0-9*?.:/@_\[\]-]+$')
_OPTION_RE = re.compile(r'^[a-z0-9_]+(=[A-Za-z0-9_:@/.-]+)?$')


class ExportSpec(BaseModel):
    """One NFS export of a dataset."""

    model_config = ConfigDict(extra='forbid')

    name: str = Field(DEFAULT_EXPORT_NAME, description="Export name, unique per dataset")
    clients: str = Field(DEFAULT_CLIENTS, description="Client host, network or wildcard")
    options: str = Field(DEFAULT_OPTIONS, description="Comma-separated exports(5) options")
    comment: str = ""

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if not _NAME_RE.match(v):
            raise ValueError(
                f"Export name '{v}' is invalid. "
                "Use letters, numbers, dots, dashes and underscores."
            )
        return v

    @field_validator('clients')
    @classmethod
    def validate_clients(cls, v):
        v = v.strip()
        if not v or not _CLIENT_RE.match(v):
            raise ValueError(f"Export clients '{v}' is not a host, network or wildcard")
        return v

    @field_validator('options')
    @classmethod
    def validate_options(cls, v):
        tokens = [token.strip() for token in v.split(',') if token.strip()]
        if not tokens:
            raise ValueError("Export options must not be empty")
        for token in tokens:
            if not _OPTION_RE.match(token):
                raise ValueError(f"Malformed export option '{token}'")
        return ','.join(tokens)

    def to_options(self) -> Dict[str, Any]:
        """Options dict stored on an ExportBinding (the comment is not exported)."""
        return {"clients": self.clients, "options": self.options}
