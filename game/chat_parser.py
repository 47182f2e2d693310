"""
Chat line parsing — payments, server arrival and relay cleanup.

Pure string handling over the plain-text form of a server chat line.
"""

import re
from dataclasses import dataclass
from typing import Optional

from tools.money import parse_money_amount

# Two formats the proxy uses for /pay receipts
PAYMENT_SENT_RE = re.compile(r"(\w+) has sent you \$?([\d,kmbt.]+)", re.IGNORECASE)
PAYMENT_RECEIVED_RE = re.compile(r"You received \$?([\d,kmbt.]+) from ([\w.]+)", re.IGNORECASE)

_FORMAT_CODE_RE = re.compile(r"§[0-9a-fk-or]")
_BAR_RE = re.compile(r"▏\s*")
_PREFIX_RE = re.compile(r"^\s*TrySmp\s*»\s*", re.IGNORECASE)
_FILLER_RE = re.compile(r"^[»\s▏.]*$")
_SYSTEM_LINE_RE = re.compile(
    r"^(Your balance is|You are already on|Sending you to|"
    r"You have been added to the queue|Usage:|Invalid amount)"
)

SERVER_ARRIVAL_TEMPLATES = (
    "You are already on the server {server}",
    "Sending you to {server}",
    "You have been added to the queue for {server}",
    "Connected to {server}",
    "Welcome to {server}",
)


@dataclass
class Payment:
    sender: str
    amount: float


def parse_payment(message: str) -> Optional[Payment]:
    """Detect an incoming /pay receipt. Returns None if the line is not one."""
    match = PAYMENT_SENT_RE.search(message)
    if match:
        sender, raw_amount = match.group(1), match.group(2)
    else:
        match = PAYMENT_RECEIVED_RE.search(message)
        if not match:
            return None
        raw_amount, sender = match.group(1), match.group(2)

    amount = parse_money_amount(raw_amount.rstrip("."))
    if amount is None:
        return None
    return Payment(sender=sender, amount=amount)


def clean_chat_line(message: str) -> Optional[str]:
    """Strip formatting for the Discord relay.

    Returns None for lines that should not be relayed: blanks, anti-AFK
    plugin chatter, separator rows and command feedback.
    """
    if not message or not message.strip() or "TryAFK" in message:
        return None
    if _SYSTEM_LINE_RE.match(message):
        return None

    cleaned = _FORMAT_CODE_RE.sub("", message)
    cleaned = _BAR_RE.sub("", cleaned)
    cleaned = _PREFIX_RE.sub("", cleaned).strip()
    if not cleaned or _FILLER_RE.match(cleaned):
        return None
    return cleaned


def is_server_confirmation(message: str, target_server: str) -> bool:
    """True if the line says we arrived at (or are queued for) the target server."""
    lowered = message.lower()
    return any(
        template.format(server=target_server).lower() in lowered
        for template in SERVER_ARRIVAL_TEMPLATES
    )


def describe_reason(reason) -> str:
    """Flatten a kick/end reason (plain string or chat-component dict) into text."""
    if reason is None:
        return ""
    if isinstance(reason, str):
        return reason
    if isinstance(reason, dict):
        parts = [str(reason.get("text", ""))]
        for extra in reason.get("extra") or []:
            parts.append(describe_reason(extra))
        return "".join(parts)
    if isinstance(reason, (list, tuple)):
        return "".join(describe_reason(r) for r in reason)
    return str(reason)
