"""
Structured email content.

An email body is an ordered list of pieces:

    {"piece": "Thank you for ...", "references": ["donation-01"], "add_newline_after": True}

Rows written before pieces existed stored the body as one string. Those are
migrated here, at the read/write boundary, so nothing downstream has to
branch on the shape.
"""

import re
from typing import Any, Dict, List

from campaign_engine.errors import ValidationError

CONTENT_VERSION = 2

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")


def normalize_structured_content(value: Any) -> List[Dict]:
    """Return ``value`` as a validated list of pieces (current version)."""
    if value is None:
        return []
    if isinstance(value, str):
        paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT.split(value) if p.strip()]
        return [
            {"piece": p, "references": [], "add_newline_after": True}
            for p in paragraphs
        ]
    if not isinstance(value, list):
        raise ValidationError("structured content must be a list of pieces or a string")

    pieces = []
    for item in value:
        if isinstance(item, str):
            pieces.append({"piece": item, "references": [], "add_newline_after": True})
            continue
        if not isinstance(item, dict) or not isinstance(item.get("piece"), str):
            raise ValidationError("each content piece needs a string 'piece'")
        references = item.get("references") or []
        if not isinstance(references, list):
            raise ValidationError("piece references must be a list")
        pieces.append({
            "piece": item["piece"],
            "references": [str(r) for r in references],
            "add_newline_after": bool(item.get("add_newline_after", item.get("addNewlineAfter", True))),
        })
    return pieces


def migrate_email_document(doc: Dict) -> Dict:
    """Bring a stored email up to the current content version in place."""
    if doc is not None and doc.get("content_version") != CONTENT_VERSION:
        doc["structured_content"] = normalize_structured_content(doc.get("structured_content"))
        doc["content_version"] = CONTENT_VERSION
    return doc


def render_plain_text(pieces: List[Dict]) -> str:
    parts = []
    for piece in pieces:
        parts.append(piece["piece"])
        parts.append("\n\n" if piece.get("add_newline_after") else " ")
    return "".join(parts).strip()


def text_to_html(text: str) -> str:
    """Convert a plain text email to basic HTML."""
    html = text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    html = html.replace("\n\n", "</p><p>").replace("\n", "<br>")
    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; font-size: 14px; line-height: 1.6; color: #333; }}
        p {{ margin: 0 0 1em 0; }}
    </style>
</head>
<body>
    <p>{html}</p>
</body>
</html>"""
