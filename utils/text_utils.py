"""
Text Utilities
Alert messages and elapsed-time labels shown on the kiosk
"""
from models.events import AlertType


def format_elapsed(minutes: int) -> str:
    """
    Human-readable duration

    Args:
        minutes: whole minutes (negative values clamp to 0)

    Returns:
        e.g. "45m", "1h 05m"
    """
    minutes = max(0, int(minutes))
    hours, rest = divmod(minutes, 60)
    if hours == 0:
        return f"{rest}m"
    return f"{hours}h {rest:02d}m"


def alert_message(item_name: str, alert_type: AlertType) -> str:
    if alert_type == AlertType.WARNING:
        return f"{item_name} cooling for 90 minutes - check soon!"
    return f"{item_name} OVERDUE - action required NOW!"
