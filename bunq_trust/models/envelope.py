"""
Wire models for the bunq response envelope.

Success: {"Response": [{TypeName: {...}}, ...], "Pagination": {...}?}
Failure: {"Error": [{"error_description": "...", "error_description_translated": "..."}]}
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class ErrorDetail(BaseModel):
    """Single entry of an `Error` array."""
    error_description: str = Field("", description="Error message in English")
    error_description_translated: str = Field("", description="Error message in the user's language")

    model_config = ConfigDict(extra="allow")


class TokenPayload(BaseModel):
    """`Token` element of installation and session-server responses."""
    id: Optional[int] = None
    token: str = Field(..., min_length=1)

    model_config = ConfigDict(extra="allow")


class ServerPublicKeyPayload(BaseModel):
    """`ServerPublicKey` element of the installation response."""
    server_public_key: str = ""

    model_config = ConfigDict(extra="allow")


class IdPayload(BaseModel):
    """`Id` element returned by create calls (e.g. device-server)."""
    id: int

    model_config = ConfigDict(extra="allow")


class UserPayload(BaseModel):
    """Any of the user variants; only the id matters for the session."""
    id: int

    model_config = ConfigDict(extra="allow")


# Closed set of user-identity variants a session-server response may carry
USER_VARIANTS = ("UserPerson", "UserCompany", "UserApiKey")


@dataclass(frozen=True)
class UserIdentity:
    kind: str  # one of USER_VARIANTS
    id: int


def parse_user_identity(item: Dict[str, Any]) -> Optional[UserIdentity]:
    """Dispatch on which variant key is present in a decoded response element."""
    for kind in USER_VARIANTS:
        raw = item.get(kind)
        if not raw:
            continue
        try:
            payload = UserPayload.model_validate(raw)
        except ValidationError:
            continue
        return UserIdentity(kind=kind, id=payload.id)
    return None


@dataclass
class BunqResponse:
    """Parsed success envelope, with the exact body text it was read from."""

    items: List[Dict[str, Any]] = field(default_factory=list)
    pagination: Optional[Dict[str, Any]] = None
    status_code: int = 200
    request_id: str = ""
    raw_text: str = ""

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return iter(self.items)

    def find(self, type_name: str) -> Optional[Dict[str, Any]]:
        """First element payload tagged `type_name`, or None."""
        for item in self.items:
            if isinstance(item, dict) and type_name in item:
                return item[type_name]
        return None

    def find_all(self, type_name: str) -> List[Dict[str, Any]]:
        return [item[type_name] for item in self.items if isinstance(item, dict) and type_name in item]
