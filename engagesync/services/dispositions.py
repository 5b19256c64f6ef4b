"""Dialer disposition classification.

Maps the free-text disposition a rep picks at the end of a call onto the
metric flags the dashboards count (connections, conversations, decision-maker
conversations, voicemails, meetings, bad data).
"""

import logging
from dataclasses import dataclass, replace

logger = logging.getLogger(__name__)


# Talk time above which an ambiguous "send email" outcome is counted as a
# decision-maker conversation. Business policy, overridable via settings.
SEND_EMAIL_DM_THRESHOLD_SECONDS = 60


@dataclass(frozen=True)
class Classification:
    disposition: str  # connected, voicemail, no_answer, bad_data, do_not_call
    outcome: str
    is_connection: bool = False
    is_conversation: bool = False
    is_dm: bool = False
    is_voicemail: bool = False
    is_meeting: bool = False
    is_bad_data: bool = False


def _connected(outcome: str, conversation: bool = False, dm: bool = False, meeting: bool = False,
               bad_data: bool = False) -> Classification:
    return Classification(
        disposition="connected",
        outcome=outcome,
        is_connection=True,
        is_conversation=conversation,
        is_dm=dm,
        is_meeting=meeting,
        is_bad_data=bad_data,
    )


_VOICEMAIL = Classification(disposition="voicemail", outcome="voicemail", is_voicemail=True)
_NO_ANSWER = Classification(disposition="no_answer", outcome="no_answer")
_UNKNOWN = Classification(disposition="no_answer", outcome="unknown")


DISPOSITIONS: dict[str, Classification] = {
    # Connections
    "receptionist": _connected("gatekeeper"),
    "gatekeeper": _connected("gatekeeper"),
    "gk": _connected("gatekeeper"),
    "callback requested": _connected("callback", conversation=True, dm=True),
    "callback": _connected("callback", conversation=True, dm=True),
    "send email": _connected("send_email"),
    "not qualified": _connected("not_qualified", conversation=True, dm=True),
    "positive - blacklist co": _connected("meeting_interest", conversation=True, dm=True, meeting=True),
    "negative - blacklist co": _connected("not_interested", conversation=True, dm=True),
    "negative - blacklist contact": _connected("not_interested", conversation=True, bad_data=True),
    "hung up": _connected("hung_up"),
    "meeting booked": _connected("meeting_booked", conversation=True, dm=True, meeting=True),
    "interested": _connected("interested", conversation=True, dm=True),
    "not_interested": _connected("not_interested", conversation=True, dm=True),
    "not interested": _connected("not_interested", conversation=True, dm=True),
    "connected": _connected("connected"),
    "conversation": _connected("connected", conversation=True),
    "dm_conversation": _connected("dm_conversation", conversation=True, dm=True),
    # Non-connections
    "voicemail": _VOICEMAIL,
    "live voicemail": _VOICEMAIL,
    "vm": _VOICEMAIL,
    "no answer": _NO_ANSWER,
    "busy": replace(_NO_ANSWER, outcome="busy"),
    "bad phone": Classification(disposition="bad_data", outcome="bad_phone", is_bad_data=True),
    "wrong number": Classification(disposition="bad_data", outcome="wrong_number", is_bad_data=True),
    "disconnected": Classification(disposition="bad_data", outcome="disconnected", is_bad_data=True),
    # Tracked separately for compliance, not as bad data
    "do not call": Classification(disposition="do_not_call", outcome="do_not_call"),
}


# Substring fallbacks for dispositions not in the table, checked in order.
_FUZZY: list[tuple[tuple[str, ...], Classification]] = [
    (("callback",), _connected("callback", conversation=True, dm=True)),
    (("positive",), _connected("meeting_interest", conversation=True, dm=True, meeting=True)),
    (("negative",), _connected("not_interested", conversation=True, dm=True)),
    (("meeting", "booked"), _connected("meeting_booked", conversation=True, dm=True, meeting=True)),
    (("voicemail",), _VOICEMAIL),
    (("no answer",), _NO_ANSWER),
    (("wrong",), Classification(disposition="bad_data", outcome="wrong_number", is_bad_data=True)),
    (("bad", "disconnect"), Classification(disposition="bad_data", outcome="bad_phone", is_bad_data=True)),
    (("connect", "answer"), _connected("connected")),
]


def classify_disposition(
    raw: str | None,
    talk_seconds: int | None = 0,
    dm_threshold_seconds: int = SEND_EMAIL_DM_THRESHOLD_SECONDS,
) -> Classification:
    """
    Classify a raw disposition string.

    Args:
        raw: Disposition text as entered on the dialer
        talk_seconds: Call talk time, used to disambiguate "send email"
        dm_threshold_seconds: Talk time above which "send email" counts as a
            decision-maker conversation rather than a gatekeeper brush-off
    """
    if not raw or not raw.strip():
        return _UNKNOWN

    normalized = raw.strip().lower()
    mapping = DISPOSITIONS.get(normalized)

    if mapping is not None:
        if normalized == "send email" and (talk_seconds or 0) > dm_threshold_seconds:
            return replace(mapping, is_conversation=True, is_dm=True)
        return mapping

    for needles, classification in _FUZZY:
        if any(needle in normalized for needle in needles):
            return classification

    logger.warning(f"Unknown disposition: '{raw}'")
    return _UNKNOWN
