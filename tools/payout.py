"""
Daily Payout — pay linked balances out in-game once a day.

Schedule: 10:00 at UTC+1, at most once per local calendar day. The
payout itself sends `/pay <name> <amount>` for each linked user with a
positive balance, pausing between lines, and zeroes what was paid.
No Discord imports; the cog supplies the chat sender and does the DMs.
"""

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional

from pydantic import BaseModel, Field

from tools.ledger import LedgerRepository
from tools.money import format_number_short, format_pay_amount

logger = logging.getLogger("Payout")

PAY_PAUSE = 2.0

ChatSender = Callable[[str], Awaitable[bool]]


class DailyPayoutSchedule:
    """Decides when the daily payout is due.

    The last-paid date starts at "today" if today's payout time has already
    passed at construction, so a restart after 10:00 does not pay twice.
    """

    def __init__(self, hour: int = 10, minute: int = 0, utc_offset_hours: int = 1, now: Optional[datetime] = None):
        self.hour = hour
        self.minute = minute
        self.tz = timezone(timedelta(hours=utc_offset_hours))
        local = self._local(now or datetime.now(timezone.utc))
        self.last_paid: date = local.date() if self._past_payout_time(local) else local.date() - timedelta(days=1)

    def _local(self, now: datetime) -> datetime:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self.tz)

    def _past_payout_time(self, local: datetime) -> bool:
        return (local.hour, local.minute) >= (self.hour, self.minute)

    def is_due(self, now: Optional[datetime] = None) -> bool:
        local = self._local(now or datetime.now(timezone.utc))
        return self._past_payout_time(local) and local.date() != self.last_paid

    def mark_done(self, now: Optional[datetime] = None):
        self.last_paid = self._local(now or datetime.now(timezone.utc)).date()

    @property
    def label(self) -> str:
        offset = self.tz.utcoffset(None)
        hours = int(offset.total_seconds() // 3600)
        return f"{self.hour:02d}:{self.minute:02d} UTC{hours:+d}"


class PayoutEntry(BaseModel):
    user_id: str
    game_name: str
    amount: float


class PayoutSummary(BaseModel):
    paid: List[PayoutEntry] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)  # user ids whose /pay did not go out

    @property
    def count(self) -> int:
        return len(self.paid)

    @property
    def total(self) -> float:
        return sum(entry.amount for entry in self.paid)


async def pay_user(
    ledger: LedgerRepository,
    send_chat: ChatSender,
    user_id: str,
) -> Optional[PayoutEntry]:
    """Pay one linked user's full balance. None if unlinked, empty or the send failed."""
    user_id = str(user_id)
    game_name = ledger.get_link(user_id)
    balance = ledger.get_balance(user_id)
    if not game_name or balance <= 0:
        return None

    amount = round(balance, 2)
    if amount <= 0:
        return None
    command = f"/pay {game_name} {format_pay_amount(amount)}"
    if not await send_chat(command):
        logger.warning(f"Could not send payout for {game_name} ({user_id})")
        return None

    ledger.reset(user_id)
    logger.info(f"Paid {format_pay_amount(amount)} to {game_name} ({user_id})")
    return PayoutEntry(user_id=user_id, game_name=game_name, amount=amount)


async def run_payout(
    ledger: LedgerRepository,
    send_chat: ChatSender,
    pause: float = PAY_PAUSE,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PayoutSummary:
    """Pay every linked positive balance, `pause` seconds apart."""
    summary = PayoutSummary()
    rows = ledger.linked_balances()
    for index, (user_id, _game_name, _balance) in enumerate(rows):
        entry = await pay_user(ledger, send_chat, user_id)
        if entry is None:
            summary.failed.append(user_id)
            continue
        summary.paid.append(entry)
        if index < len(rows) - 1:
            await sleep(pause)

    logger.info(f"Payout complete: {format_number_short(summary.total)} to {summary.count} users")
    return summary
