"""Identity strings for backup records.

An identity is a deterministic dedup key built from a record's attributes.
A record has one primary identity and possibly alternates (other spellings
of the same logical record, e.g. an MMS known by both its message id and
its transaction id).

Pure functions: no I/O, no logging. The extractor decides what to log.
"""
from __future__ import annotations

import base64
import hashlib
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TypeAlias

from smsmerge.record_types import UnknownRecordKindError


@dataclass(frozen=True, slots=True)
class IdentityResult:
    """Identity strings for one record; ``ids[0]`` is the primary."""

    ids: tuple[str, ...]
    is_fallback: bool = False

    def __post_init__(self) -> None:
        if not self.ids:
            raise ValueError("IdentityResult requires at least one id")

    @property
    def primary(self) -> str:
        return self.ids[0]

    @property
    def alternates(self) -> tuple[str, ...]:
        return self.ids[1:]


def attribute_or_none(attributes: Mapping[str, str], name: str) -> str | None:
    """Attribute value, or None when absent, blank, or the literal ``"null"``.

    Backup tools write ``"null"`` for unset fields.
    """
    value = attributes.get(name)
    if value is None or not value.strip() or value == "null":
        return None
    return value


def content_digest(text: str) -> str:
    """Base64 SHA-1 of *text* (UTF-8). Blank text digests to ``""``."""
    if not text.strip():
        return ""
    return base64.b64encode(hashlib.sha1(text.encode("utf-8")).digest()).decode("ascii")


def sms_identity(attributes: Mapping[str, str], text: str = "") -> IdentityResult:
    a = attributes.get
    key = (
        f"SMS=1_D={a('date', '')}_DS={a('date_sent', '')}_A={a('address', '')}"
        f"_P={a('protocol', '')}_T={a('type', '')}"
        f"_C={content_digest(attributes.get('body') or '')}"
    )
    return IdentityResult(ids=(key,))


def mms_identity(attributes: Mapping[str, str], text: str = "") -> IdentityResult:
    """Identity for a multi-part message.

    One id per correlating attribute present (``m_id`` then ``tr_id``), all
    sharing the same prefix. With neither, falls back to a digest of the
    element's text content, which is not guaranteed unique.
    """
    a = attributes.get
    prefix = (
        f"MMS=1_D={a('date', '')}_DS={a('date_sent', '')}"
        f"_MB={attribute_or_none(attributes, 'msg_box') or ''}"
        f"_A={attribute_or_none(attributes, 'address') or ''}"
    )
    ids: list[str] = []
    m_id = attribute_or_none(attributes, "m_id")
    if m_id is not None:
        ids.append(f"{prefix}_MID={m_id}")
    tr_id = attribute_or_none(attributes, "tr_id")
    if tr_id is not None:
        ids.append(f"{prefix}_TRID={tr_id}")
    if ids:
        return IdentityResult(ids=tuple(ids))
    return IdentityResult(ids=(f"{prefix}_TXT={content_digest(text)}",), is_fallback=True)


IdentityRule: TypeAlias = Callable[[Mapping[str, str], str], IdentityResult]

# Closed set of record kinds. The extractor accepts exactly these tags.
RECORD_KINDS: dict[str, IdentityRule] = {
    "sms": sms_identity,
    "mms": mms_identity,
}

# Kinds whose identity needs the element's text content (collected by the
# extractor only for these, to keep memory flat for the common case).
TEXT_IDENTITY_KINDS: frozenset[str] = frozenset({"mms"})


def identify(kind: str, attributes: Mapping[str, str], text: str = "") -> IdentityResult:
    """Compute identities for a record of *kind*.

    Raises UnknownRecordKindError for kinds outside RECORD_KINDS.
    """
    rule = RECORD_KINDS.get(kind)
    if rule is None:
        raise UnknownRecordKindError(
            f"no identity rule for <{kind}>; known kinds: "
            + ", ".join(f"<{k}>" for k in RECORD_KINDS)
        )
    return rule(attributes, text)
