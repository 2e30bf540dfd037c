"""Deliverability pre-check for campaigns.

A deterministic content heuristic, not a seed-inbox test: the same campaign
always gets the same score. Advisory only; it never blocks a send.
"""

from __future__ import annotations

import re
import uuid
from typing import Any

from eventcrm.core.config import settings
from eventcrm.db.models import Campaign
from eventcrm.services.email_transport import html_to_text
from eventcrm.utils.datetime_utils import utcnow

SPAM_KEYWORDS = (
    "free",
    "money",
    "winner",
    "cash",
    "guarantee",
    "act now",
    "urgent",
    "click here",
    "100%",
    "risk-free",
)

MAILBOX_PROVIDERS = ("gmail", "outlook", "yahoo", "protonmail")

MIN_BODY_CHARS = 50
MAX_SUBJECT_CHARS = 78
MAX_SPAM_SCORE = 10
SPAM_THRESHOLD = 5
PROMOTIONS_THRESHOLD = 3


def _keyword_hits(text: str) -> list[str]:
    lowered = text.lower()
    return [
        kw for kw in SPAM_KEYWORDS if re.search(rf"(?<!\w){re.escape(kw)}(?!\w)", lowered)
    ]


def _placement(score: int) -> list[dict[str, str]]:
    placements = []
    for provider in MAILBOX_PROVIDERS:
        if score >= SPAM_THRESHOLD:
            folder = "spam"
        elif score >= PROMOTIONS_THRESHOLD and provider == "gmail":
            folder = "promotions"
        else:
            folder = "inbox"
        placements.append({"provider": provider, "folder": folder})
    return placements


def analyze_content(
    *,
    subject: str,
    body_html: str,
    body_text: str | None,
    from_email: str | None,
) -> dict[str, Any]:
    """Score content 0-10 (higher is worse) and explain each point."""
    score = 0
    recommendations: list[str] = []

    subject_hits = _keyword_hits(subject)
    if subject_hits:
        score += 2 * len(subject_hits)
        recommendations.append(
            "Avoid spam trigger words in the subject: " + ", ".join(subject_hits)
        )

    letters = [c for c in subject if c.isalpha()]
    if len(letters) >= 4 and all(c.isupper() for c in letters):
        score += 2
        recommendations.append("Avoid writing the subject in all caps")

    if subject.count("!") > 1:
        score += 1
        recommendations.append("Use at most one exclamation mark in the subject")

    if len(subject) > MAX_SUBJECT_CHARS:
        score += 1
        recommendations.append(f"Keep the subject under {MAX_SUBJECT_CHARS} characters")

    visible_text = html_to_text(body_html or "")
    if len(visible_text) < MIN_BODY_CHARS:
        score += 2
        recommendations.append("Add more content to the email body")

    body_hits = _keyword_hits(visible_text)
    if body_hits:
        score += 1
        recommendations.append(
            "Reduce promotional wording in the body: " + ", ".join(body_hits)
        )

    if not (body_text or "").strip():
        score += 1
        recommendations.append("Provide a plain-text version of the email")

    if not (from_email or settings.EMAIL_FROM):
        score += 1
        recommendations.append("Set a sender address")

    score = min(score, MAX_SPAM_SCORE)
    if not recommendations:
        recommendations.append("Content looks good")

    return {
        "spam_score": score,
        "passed": score < SPAM_THRESHOLD,
        "placement": _placement(score),
        "recommendations": recommendations,
    }


def run_deliverability_test(campaign: Campaign) -> dict[str, Any]:
    result = analyze_content(
        subject=campaign.subject,
        body_html=campaign.body_html,
        body_text=campaign.body_text,
        from_email=campaign.from_email,
    )
    return {
        "id": str(uuid.uuid4()),
        "status": "completed",
        "tested_at": utcnow().isoformat(),
        **result,
    }
