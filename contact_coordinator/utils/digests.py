from __future__ import annotations

import hashlib
import json
import re


_WS = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Collapse whitespace runs and trim, so gateway re-deliveries hash alike."""
    return _WS.sub(" ", text or "").strip()


def _digest(*fields: str) -> str:
    # JSON array keeps field boundaries, so "A:x" + "y" != "A" + "x:y"
    content = json.dumps(list(fields), ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def inbound_hash(contact_id: str, text: str, kind: str = "text") -> str:
    return _digest(contact_id, normalize_text(text), kind or "text")


def response_hash(contact_id: str, text: str) -> str:
    # exact text: a reworded reply is a different reply
    return _digest(contact_id, text)
