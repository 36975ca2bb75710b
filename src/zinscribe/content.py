"""
Inscription content kinds.

Each kind is a pydantic model tagged by ``kind`` and knows its own MIME type
and payload encoding, so the envelope codec only ever sees
``(content_type, payload)``.
"""

from __future__ import annotations

import base64
import json
import re
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from zinscribe.errors import InvalidContent

NAME_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{1,61}[a-z0-9])$")
NAME_SUFFIXES = (".zec", ".zcash")
TICKER_PATTERN = re.compile(r"^[A-Z0-9]{1,5}$")


class TextContent(BaseModel):
    kind: Literal["text"] = "text"
    text: str
    charset: str | None = "utf-8"

    @property
    def content_type(self) -> str:
        if self.charset:
            return f"text/plain;charset={self.charset}"
        return "text/plain"

    def payload(self) -> bytes:
        return self.text.encode("utf-8")


class JsonContent(BaseModel):
    kind: Literal["json"] = "json"
    data: Any

    @property
    def content_type(self) -> str:
        return "application/json"

    def payload(self) -> bytes:
        return json.dumps(self.data, separators=(",", ":")).encode("utf-8")


class Zrc20Content(BaseModel):
    """ZRC-20 token operation (deploy, mint or transfer)."""

    kind: Literal["zrc20"] = "zrc20"
    op: Literal["deploy", "mint", "transfer"]
    tick: str
    amt: str | None = None
    max: str | None = None
    lim: str | None = None

    @field_validator("tick")
    @classmethod
    def normalize_tick(cls, v: str) -> str:
        tick = v.strip().upper()
        if not TICKER_PATTERN.match(tick):
            raise ValueError(f"Invalid ticker: {v!r}")
        return tick

    @field_validator("amt", "max", "lim")
    @classmethod
    def validate_amount(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = str(v).strip()
        if not v.isdigit() or int(v) <= 0:
            raise ValueError(f"Amount must be a positive integer string, got {v!r}")
        return v

    @model_validator(mode="after")
    def check_op_fields(self) -> Zrc20Content:
        if self.op == "deploy":
            if self.max is None:
                raise ValueError("deploy requires max")
        elif self.amt is None:
            raise ValueError(f"{self.op} requires amt")
        return self

    @property
    def content_type(self) -> str:
        return "application/json"

    def payload(self) -> bytes:
        body: dict[str, str] = {"p": "zrc-20", "op": self.op, "tick": self.tick}
        if self.op == "deploy":
            body["max"] = self.max or ""
            if self.lim is not None:
                body["lim"] = self.lim
        else:
            body["amt"] = self.amt or ""
        return json.dumps(body, separators=(",", ":")).encode("utf-8")


class NameContent(BaseModel):
    """Name registration such as ``alice.zec``."""

    kind: Literal["name"] = "name"
    name: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        full = v.strip().lower()
        suffix = next((s for s in NAME_SUFFIXES if full.endswith(s)), None)
        if suffix is None:
            raise ValueError(f"Name must end with one of {', '.join(NAME_SUFFIXES)}")
        label = full[: -len(suffix)]
        if not NAME_PATTERN.match(label) or "--" in label:
            raise ValueError(
                "Name must be 3-63 characters of letters, digits and inner hyphens"
            )
        return full

    @property
    def content_type(self) -> str:
        return "text/plain"

    def payload(self) -> bytes:
        return self.name.encode("utf-8")


class BinaryContent(BaseModel):
    model_config = ConfigDict(ser_json_bytes="base64")

    kind: Literal["binary"] = "binary"
    mime_type: str = Field(..., min_length=1, max_length=255)
    data: bytes = b""

    @field_validator("data", mode="before")
    @classmethod
    def decode_base64(cls, v: Any) -> Any:
        if isinstance(v, str):
            try:
                return base64.b64decode(v, validate=True)
            except ValueError as e:
                raise ValueError(f"Binary data must be base64: {e}") from e
        return v

    @property
    def content_type(self) -> str:
        return self.mime_type

    def payload(self) -> bytes:
        return self.data


ContentModel = TextContent | JsonContent | Zrc20Content | NameContent | BinaryContent

InscriptionContent = Annotated[ContentModel, Field(discriminator="kind")]


class _ContentWrapper(BaseModel):
    content: InscriptionContent


def parse_content(data: dict[str, Any]) -> ContentModel:
    """Validate a raw ``{"kind": ...}`` mapping into a content model."""
    try:
        return _ContentWrapper.model_validate({"content": data}).content
    except ValueError as e:
        raise InvalidContent(str(e)) from e
