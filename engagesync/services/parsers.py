"""Normalizers that turn raw platform JSON into canonical row dicts.

Every function here is total: malformed fields become ``None`` (or a
documented default) instead of raising, so one bad record never fails a
batch. Records without a usable external id are dropped (``None``) because
they cannot be upserted idempotently.
"""

from datetime import datetime, date, timezone
import logging
import math
import re
from typing import Any, Optional

from engagesync.services.dispositions import classify_disposition, SEND_EMAIL_DM_THRESHOLD_SECONDS

logger = logging.getLogger(__name__)


def _clean(value: Any) -> Optional[str]:
    """Strip strings, map empty to None, stringify scalars."""
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _first(raw: dict, *keys: str) -> Any:
    """First non-empty value among ``keys``."""
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def parse_float(value: Any) -> Optional[float]:
    """Strict numeric parse; anything unparseable is None, never 0."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip().rstrip('%').replace(',', '')
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    return number if math.isfinite(number) else None


def parse_int(value: Any) -> Optional[int]:
    """Strict integer parse (fractions truncated); unparseable is None."""
    number = parse_float(value)
    return int(number) if number is not None else None


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp into a naive UTC datetime.

    Accepts ISO 8601 strings (with or without offset), "YYYY-MM-DD HH:MM:SS",
    compact "YYYYMMDD" dates, and epoch seconds or milliseconds as numbers
    or digit strings longer than eight characters.
    """
    if value is None or isinstance(value, bool) or value == "":
        return None

    try:
        text = str(value).strip()
        if isinstance(value, str) and text.isdigit() and len(text) == 8:
            return datetime.strptime(text, "%Y%m%d")

        if isinstance(value, (int, float)) or text.isdigit():
            ts = float(value)
            if ts > 1e12:
                ts /= 1000
            return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)

        # Handle format like "2025-01-28T22:00:00.0"
        if text.endswith('.0'):
            text = text[:-2]
        parsed = datetime.fromisoformat(text)
    except (ValueError, OverflowError, OSError):
        logger.debug(f"Unparseable timestamp: {value!r}")
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def normalize_contact(raw: Any, workspace_id: str, platform: str = "phoneburner") -> Optional[dict]:
    """Map a dialer contact onto an ``external_contacts`` row."""
    if not isinstance(raw, dict):
        return None

    external_id = _clean(_first(raw, "contact_user_id", "contact_id", "id"))
    if external_id is None:
        return None

    email = _clean(raw.get("email"))
    if isinstance(raw.get("primary_email"), dict):
        email = email or _clean(raw["primary_email"].get("email_address"))

    phone = _clean(_first(raw, "phone", "phone_number"))
    if isinstance(raw.get("primary_phone"), dict):
        phone = phone or _clean(raw["primary_phone"].get("phone"))

    return {
        "workspace_id": workspace_id,
        "platform": platform,
        "external_id": external_id,
        "first_name": _clean(raw.get("first_name")),
        "last_name": _clean(raw.get("last_name")),
        "email": email.lower() if email else None,
        "phone": phone,
        "company": _clean(_first(raw, "company", "company_name")),
        "category_id": _clean(raw.get("category_id")),
        "date_added": parse_datetime(raw.get("date_added")),
    }


def normalize_dial_session(raw: Any, workspace_id: str) -> Optional[dict]:
    """Map a dial session summary onto a ``dial_sessions`` row."""
    if not isinstance(raw, dict):
        return None

    external_id = _clean(_first(raw, "dialsession_id", "session_id", "id"))
    if external_id is None:
        return None

    member_name = _clean(raw.get("member_name"))
    if member_name is None:
        parts = [_clean(raw.get("first_name")), _clean(raw.get("last_name"))]
        member_name = " ".join(p for p in parts if p) or None

    return {
        "workspace_id": workspace_id,
        "external_id": external_id,
        "member_id": _clean(_first(raw, "member_user_id", "user_id", "member_id")),
        "member_name": member_name,
        "caller_id": _clean(_first(raw, "caller_id", "callerid")),
        "start_at": parse_datetime(_first(raw, "start_when", "date_start", "start_at", "start")),
        "end_at": parse_datetime(_first(raw, "end_when", "date_end", "end_at", "end")),
        "call_count": parse_int(_first(raw, "call_count", "total_calls", "calls")),
    }


def normalize_call(
    raw: Any,
    workspace_id: str,
    session_id: Optional[str] = None,
    dm_threshold_seconds: int = SEND_EMAIL_DM_THRESHOLD_SECONDS,
) -> Optional[dict]:
    """Map a call from a dial session detail onto a ``calls`` row."""
    if not isinstance(raw, dict):
        return None

    external_id = _clean(_first(raw, "call_id", "id", "user_activity_id"))
    if external_id is None:
        return None

    duration = parse_int(_first(raw, "duration", "talk_time", "duration_seconds"))
    disposition = _clean(_first(raw, "disposition", "disposition_name", "activity"))
    activity = (_clean(raw.get("activity")) or "").lower()
    classification = classify_disposition(disposition, duration or 0, dm_threshold_seconds)

    email_sent = raw.get("email_sent")
    if isinstance(email_sent, str):
        email_sent = email_sent.strip().lower() in ("1", "true", "yes", "y")

    return {
        "workspace_id": workspace_id,
        "external_id": external_id,
        "dial_session_id": session_id or _clean(_first(raw, "dialsession_id", "session_id")),
        "external_contact_id": _clean(_first(raw, "contact_user_id", "contact_id")),
        "member_id": _clean(_first(raw, "member_user_id", "user_id")),
        "phone_number": _clean(_first(raw, "phone_dialed", "phone", "phone_number")),
        "start_at": parse_datetime(_first(raw, "start_when", "call_start", "start_at", "date")),
        "end_at": parse_datetime(_first(raw, "end_when", "call_end", "end_at")),
        "duration_seconds": duration,
        "disposition": disposition,
        "disposition_id": _clean(_first(raw, "disposition_id", "activity_id")),
        "outcome": classification.outcome,
        "is_connected": classification.is_connection,
        "is_conversation": classification.is_conversation,
        "is_dm_conversation": classification.is_dm,
        "is_voicemail": classification.is_voicemail or "voicemail" in activity,
        "is_meeting": classification.is_meeting,
        "is_bad_data": classification.is_bad_data,
        "email_sent": bool(email_sent),
        "recording_url": _clean(_first(raw, "recording_url", "recording")),
        "notes": _clean(raw.get("notes")),
    }


def normalize_usage(raw: Any, workspace_id: str, day: date) -> list[dict]:
    """
    Map a usage report onto ``daily_metrics`` rows, one per member.

    The report is either ``{member_id: stats}`` or a list of stats objects
    carrying their own member id. Talk time is reported in minutes.
    """
    if isinstance(raw, dict):
        entries = [(str(k), v) for k, v in raw.items() if isinstance(v, dict)]
    elif isinstance(raw, list):
        entries = [
            (_clean(_first(v, "member_user_id", "user_id", "member_id")), v)
            for v in raw if isinstance(v, dict)
        ]
    else:
        return []

    rows = []
    for member_id, stats in entries:
        if not member_id:
            continue
        talk_minutes = parse_float(stats.get("talktime"))
        parts = [_clean(stats.get("first_name")), _clean(stats.get("last_name"))]
        rows.append({
            "workspace_id": workspace_id,
            "date": day,
            "member_id": member_id,
            "member_name": _clean(stats.get("name")) or " ".join(p for p in parts if p) or None,
            "total_sessions": parse_int(stats.get("sessions")) or 0,
            "total_calls": parse_int(stats.get("calls")) or 0,
            "calls_connected": parse_int(stats.get("connected")) or 0,
            "voicemails_left": parse_int(stats.get("voicemail")) or 0,
            "emails_sent": parse_int(stats.get("emails")) or 0,
            "total_talk_time_seconds": int(talk_minutes * 60) if talk_minutes is not None else 0,
        })
    return rows


# Tabular source column -> scored_calls column
SCORED_CALL_COLUMNS: dict[str, str] = {
    "Call Title": "call_title",
    "Fireflies URL": "call_url",
    "Host Email": "host_email",
    "All Participants": "all_participants",
    "Transcript": "transcript_text",
    "Summary": "call_summary",
    "Annual Revenue": "annual_revenue",
    "EBITDA": "ebitda",
    "Timeline To Sell": "timeline_to_sell",
    "Interest in Selling": "interest_in_selling",
}

SCORED_CALL_SCORES: dict[str, str] = {
    "Seller Interest Score": "seller_interest_score",
    "Objection Handling Score": "objection_handling_score",
    "Objection to Resolution Rate Percentage": "objection_resolution_rate",
    "Valuation Discussion Score": "valuation_discussion_score",
    "Rapport Building Score": "rapport_building_score",
    "Value Proposition Score": "value_proposition_score",
    "Conversation Quality Score": "conversation_quality_score",
    "Script Adherence Score": "script_adherence_score",
    "Question Adherence Score": "question_adherence_score",
    "Next Steps Clarity Score": "next_step_clarity_score",
    "Overall Quality Score": "overall_quality_score",
}

SCORED_CALL_COUNTS: dict[str, str] = {
    "Duration": "duration",
    "No of Employees": "employee_count",
    "Number of Objections": "objections_count",
    "Objections Resolved Count": "objections_resolved_count",
    "Questions Covered Count": "questions_covered_count",
}

_CONTACT_IN_TITLE = re.compile(r'(?:call with|meeting with|with)\s+(.+?)(?:\s+from|\s+-|$)', re.IGNORECASE)
_COMPANY_IN_TITLE = re.compile(r'(?:from|at|@)\s+(.+?)(?:\s+-|$)', re.IGNORECASE)
_EXT_TITLE = re.compile(r'^(.+?)\s*<ext>', re.IGNORECASE)


def _titlecase_words(text: str) -> str:
    words = re.sub(r'[._-]+', ' ', text).split()
    return " ".join(w[:1].upper() + w[1:] for w in words)


def extract_prospect(
    participants: Optional[str],
    host_email: Optional[str],
    call_title: Optional[str] = None,
    internal_domains: tuple[str, ...] = (),
) -> Optional[dict]:
    """
    Pick the prospect out of a call's participant list.

    The prospect is the first participant email that is neither the host nor
    on an internal domain. Name and company come from a "Company <ext> ..."
    call title when present, otherwise from the email itself.
    """
    host = (host_email or "").strip().lower()
    candidates = [
        p.strip().lower()
        for p in re.split(r'[,;]', participants or "")
        if "@" in p
    ]
    email = next(
        (
            c for c in candidates
            if c != host and not any(c.endswith(f"@{d}") or c.endswith(f".{d}") for d in internal_domains)
        ),
        None,
    )
    if email is None:
        return None

    local, _, domain = email.partition("@")
    company = None
    ext_match = _EXT_TITLE.match(call_title or "")
    if ext_match:
        company = ext_match.group(1).strip() or None

    name = company or _titlecase_words(local)
    if company is None and domain:
        company = _titlecase_words(domain.split(".")[0]) or None

    first_name, _, last_name = name.partition(" ")
    return {
        "email": email,
        "first_name": first_name or None,
        "last_name": last_name or None,
        "company": company,
    }


def normalize_scored_call(
    raw: Any,
    workspace_id: str,
    internal_domains: tuple[str, ...] = (),
) -> Optional[dict]:
    """Map a tabular-source row onto a ``scored_calls`` row."""
    if not isinstance(raw, dict):
        return None

    external_id = _clean(_first(raw, "Id", "id"))
    if external_id is None:
        return None

    row: dict[str, Any] = {"workspace_id": workspace_id, "external_id": external_id}
    for source, column in SCORED_CALL_COLUMNS.items():
        row[column] = _clean(raw.get(source))
    for source, column in SCORED_CALL_SCORES.items():
        row[column] = parse_float(raw.get(source))
    for source, column in SCORED_CALL_COUNTS.items():
        row[column] = parse_int(raw.get(source))

    row["date_time"] = parse_datetime(_first(raw, "Date Time", "Date"))
    row["composite_score"] = row["overall_quality_score"]

    title = row["call_title"] or ""
    contact_match = _CONTACT_IN_TITLE.search(title)
    company_match = _COMPANY_IN_TITLE.search(title)
    row["contact_name"] = contact_match.group(1).strip() if contact_match else None
    row["company_name"] = company_match.group(1).strip() if company_match else None

    prospect = extract_prospect(row["all_participants"], row["host_email"], title, internal_domains)
    row["prospect_email"] = prospect["email"] if prospect else None
    row["raw_record"] = raw
    return row
