"""
keyward - keyfile

Rendering and parsing of authorized_keys lines, body normalization and
OpenSSH-style SHA256 fingerprints.

A line is `[options ]key_type key_base64[ comment]`. Options may contain
quoted strings with spaces (command="..."), so the options field is split on
the first unquoted space only.
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import hashlib
import re
from typing import List, Optional

from keyward.agent import MARKER
from keyward.errors import DataIntegrityError

KEY_TYPE_RE = re.compile(
    r"^(ssh-(rsa|dss|ed25519)|ecdsa-sha2-nistp(256|384|521)"
    r"|sk-(ssh-ed25519|ecdsa-sha2-nistp256)@openssh\.com"
    r"|[a-z0-9-]+-cert-v01@openssh\.com)$"
)
BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,3}$")


@dataclasses.dataclass(frozen=True)
class KeyLine:
    key_type: str
    key_base64: str
    options: Optional[str] = None
    comment: Optional[str] = None

    def render(self) -> str:
        return render_line(self.key_type, self.key_base64, self.options, self.comment)


def _check_field(name: str, value: Optional[str]) -> None:
    if value is not None and ("\n" in value or "\r" in value):
        raise DataIntegrityError(f"{name} contains a line break")


def render_line(
    key_type: str,
    key_base64: str,
    options: Optional[str] = None,
    comment: Optional[str] = None,
) -> str:
    if not key_type or not key_type.strip():
        raise DataIntegrityError("missing key type")
    if not key_base64 or not key_base64.strip():
        raise DataIntegrityError("missing key material")
    if not KEY_TYPE_RE.match(key_type):
        raise DataIntegrityError(f"unsupported key type {key_type!r}")
    if not BASE64_RE.match(key_base64):
        raise DataIntegrityError("key material is not valid base64")
    try:
        base64.b64decode(key_base64, validate=True)
    except (binascii.Error, ValueError) as ex:
        raise DataIntegrityError("key material is not valid base64") from ex
    _check_field("options", options)
    _check_field("comment", comment)
    if options is not None and options != options.strip():
        raise DataIntegrityError("options have surrounding whitespace")
    if options is not None and _split_options(options + " x")[1] != "x":
        raise DataIntegrityError(f"options contain an unquoted space: {options!r}")
    if comment is not None and comment != comment.strip():
        raise DataIntegrityError("comment has surrounding whitespace")

    parts = []
    if options:
        parts.append(options)
    parts += [key_type, key_base64]
    if comment:
        parts.append(comment)
    return " ".join(parts)


def _split_options(line: str) -> tuple:
    """Split at the first space outside double quotes."""
    quoted = False
    escaped = False
    for i, ch in enumerate(line):
        if escaped:
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == '"':
            quoted = not quoted
        elif ch in " \t" and not quoted:
            return line[:i], line[i + 1 :].lstrip(" \t")
    return line, ""


def parse_line(line: str) -> KeyLine:
    """Parse one non-comment line. Raises ValueError when it is not a key."""
    text = line.strip()
    if not text:
        raise ValueError("empty line")

    options = None
    head, _, rest = text.partition(" ")
    if not KEY_TYPE_RE.match(head):
        options, text = _split_options(text)
        head, _, rest = text.partition(" ")
        if not KEY_TYPE_RE.match(head):
            raise ValueError(f"unknown key type in {line!r}")

    material, _, comment = rest.strip().partition(" ")
    if not material or not BASE64_RE.match(material):
        raise ValueError(f"invalid key material in {line!r}")
    try:
        base64.b64decode(material, validate=True)
    except (binascii.Error, ValueError) as ex:
        raise ValueError(f"undecodable key material in {line!r}") from ex

    comment = comment.strip()
    return KeyLine(head, material, options or None, comment or None)


def key_lines(body: str) -> List[str]:
    """Lines that carry keys: no blanks, no comments."""
    return [
        ln
        for ln in body.replace("\r", "").split("\n")
        if ln.strip() and not ln.lstrip().startswith("#")
    ]


def normalize_body(body: str) -> str:
    lines = body.replace("\r", "").split("\n")
    if lines and lines[0] == MARKER:
        lines = lines[1:]
    lines = [ln.rstrip() for ln in lines]
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


def fingerprint(key_base64: str) -> str:
    digest = hashlib.sha256(base64.b64decode(key_base64)).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def same_fingerprint(a: str, b: str) -> bool:
    return a.strip().rstrip("=") == b.strip().rstrip("=")
