"""Markdown composition and sanitized HTML/plaintext rendering for outgoing mail."""
import re
from typing import Dict, List

import bleach
from markdown_it import MarkdownIt


# Single parser reused across messages; raw HTML disabled
_md = MarkdownIt("commonmark", {"linkify": True, "typographer": True, "html": False}).enable(["linkify", "table", "strikethrough"])

EMAIL_ALLOWED_TAGS = [
    "p",
    "ul",
    "ol",
    "li",
    "strong",
    "em",
    "h1",
    "h2",
    "h3",
    "table",
    "thead",
    "tbody",
    "tr",
    "th",
    "td",
    "hr",
    "a",
    "br",
    "code",
]

ALLOWED_ATTRIBUTES = {
    "a": ["href", "title", "rel", "target"],
    "th": ["colspan", "rowspan", "align"],
    "td": ["colspan", "rowspan", "align"],
}

PURPOSE_LABELS = {
    "COMPLAINT_SUBMISSION": "submit your complaint",
    "COMPLAINT_TRACKING": "track your complaint",
    "LOGIN": "sign in to your account",
    "PASSWORD_SETUP": "set your account password",
}


def _normalize_whitespace(text: str) -> str:
    cleaned = re.sub(r"[\r\t]+", " ", text or "")
    cleaned = re.sub(r" +", " ", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def markdown_to_html(md_text: str) -> str:
    rendered = _md.render(_normalize_whitespace(md_text))
    return bleach.clean(rendered, tags=EMAIL_ALLOWED_TAGS, attributes=ALLOWED_ATTRIBUTES, strip=True)


def markdown_to_email_html(md_text: str) -> str:
    safe_html = markdown_to_html(md_text)
    return (
        "<div style=\"font-family: 'Segoe UI', Arial, sans-serif; font-size: 14px; line-height: 1.6; color: #0f172a;\">"
        f"{safe_html}"
        "</div>"
    )


def markdown_to_plaintext(md_text: str) -> str:
    rendered = markdown_to_html(md_text)
    text_only = bleach.clean(rendered, tags=[], attributes={}, strip=True)
    return re.sub(r"\s+", " ", text_only).strip()


def format_sections(sections: List[Dict[str, object]]) -> str:
    """Build markdown from an ordered list of sections."""
    parts: List[str] = []
    for section in sections:
        title = _normalize_whitespace(str(section.get("title", "") or ""))
        if title:
            parts.append(f"## {title}")
        body = section.get("body") or ""
        if body:
            parts.append(_normalize_whitespace(str(body)))
        for bullet in section.get("bullets") or []:
            if bullet is None:
                continue
            bullet_text = _normalize_whitespace(str(bullet))
            if bullet_text:
                parts.append(f"- {bullet_text}")
        parts.append("")
    return "\n".join([p for p in parts if p.strip()])


def format_otp_markdown(code: str, purpose: str, ttl_minutes: int) -> str:
    action = PURPOSE_LABELS.get(purpose, "continue")
    sections = [
        {
            "title": "Your Verification Code",
            "body": f"Use the code below to {action} on the Ward Grievance Portal.",
            "bullets": [f"Code: **{code}**", f"Valid for: {ttl_minutes} minutes"],
        },
        {
            "title": "Security Reminder",
            "bullets": [
                "Never share this code with anyone, including municipal staff.",
                "If you did not request this, ignore this email.",
            ],
        },
    ]
    return format_sections(sections)


def mask_email(value: str | None) -> str:
    if not value or "@" not in value:
        return "***"
    local, domain = value.split("@", 1)
    if len(local) <= 2:
        masked_local = (local[0] + "*") if local else "*"
    else:
        masked_local = local[0] + "***" + local[-1]
    return f"{masked_local}@{domain}"
