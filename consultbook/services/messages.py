"""Formatted WhatsApp replies for booking conversations."""

from datetime import datetime

from consultbook.services.intervals import CandidateSlot
from consultbook.services.timewindow import format_for_display


def format_slot_list(slots: list[CandidateSlot], limit: int = 3) -> str:
    return "\n".join(f"{i}. {format_for_display(slot.start)}" for i, slot in enumerate(slots[:limit], 1))


def format_booking_confirmed(
    agent_name: str | None,
    when: datetime,
    join_url: str | None = None,
    passcode: str | None = None,
) -> str:
    """Confirmation text; the join link is only included when the meeting really exists."""
    name = agent_name or "your consultant"
    lines = [
        "Booking confirmed!",
        "",
        f"*{name}*",
        f"Date/time: {format_for_display(when)}",
    ]
    if join_url:
        lines.append(f"Join link: {join_url}")
        if passcode:
            lines.append(f"Passcode: {passcode}")
    else:
        lines.append("The meeting link will be sent to you before the consultation.")
    return "\n".join(lines)


def format_alternative_offered(requested: datetime | None, offered: datetime) -> str:
    if requested is not None:
        opening = f"*{format_for_display(requested)}* isn't available."
    else:
        opening = "That time isn't available."
    return (
        f"{opening} The closest open slot is *{format_for_display(offered)}*. "
        "Reply *yes* to book it, or suggest another time."
    )


def format_no_availability(requested: datetime | None = None) -> str:
    if requested is not None:
        return (
            f"There are no open slots around *{format_for_display(requested)}* right now. "
            "Could you suggest a different day?"
        )
    return "There are no open slots in the next two weeks. We'll reach out as soon as one opens up."


def format_ask_for_time(slots: list[CandidateSlot]) -> str:
    lines = [
        "When would suit you? A few open slots:",
        "",
        format_slot_list(slots),
        "",
        'Reply with a time such as *"3pm tomorrow"*.',
    ]
    return "\n".join(lines)


def format_system_error() -> str:
    return "Sorry, we couldn't check the calendar just now. Please try again in a few minutes."


def format_cancellation_notice(lead_name: str | None, when: datetime, reason: str | None = None) -> str:
    greeting = f"Hi {lead_name}," if lead_name else "Hi,"
    lines = [
        greeting,
        f"your consultation on *{format_for_display(when)}* has been cancelled.",
    ]
    if reason:
        lines.append(f"Reason: {reason}")
    lines.append("Reply with a new time if you'd like to rebook.")
    return "\n".join(lines)
