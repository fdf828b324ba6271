# model/keysource.py
from __future__ import annotations
import hashlib
from dataclasses import dataclass
from typing import Iterable, List, Tuple

from ..errors import SourceUnavailable

FINGERPRINT_LEN = 16


@dataclass(frozen=True)
class KeyEntry:
    key: str
    product_id: str


def parse_lines(lines: Iterable[str]) -> List[KeyEntry]:
    # KEY|PRODUCT_ID per line; blanks, `#` comments and half lines are skipped
    entries = []
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, _, product_id = line.partition("|")
        key, product_id = key.strip(), product_id.strip()
        if key and product_id:
            entries.append(KeyEntry(key=key, product_id=product_id))
    return entries


def fingerprint(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()[:FINGERPRINT_LEN]


def read_source(path: str) -> Tuple[List[KeyEntry], str]:
    """
    Read the authoritative key file.
    Returns (entries in file order, fingerprint of the raw bytes).
    """
    try:
        with open(path, "rb") as f:
            raw = f.read()
    except OSError as e:
        raise SourceUnavailable(f"cannot read key source {path}: {e}") from e
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise SourceUnavailable(f"key source {path} is not utf-8") from e
    return parse_lines(text.splitlines()), fingerprint(raw)
