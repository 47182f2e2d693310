"""
Ledger — Discord user balances and linked in-game names.

Two JSON files in `data_dir`:

    user_money.json    {"users": {"<discord id>": 1250.0, ...}, "metadata": {...}}
    linked_users.json  {"users": {"<discord id>": "GameName", ...}, "metadata": {...}}

Every mutation rewrites the affected file (temp file + os.replace).
This is pure Python + Pydantic — no Discord imports.
"""

import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

logger = logging.getLogger("Ledger")

DEFAULT_TAX_RATE = 0.10


class LedgerError(Exception):
    """Base class for ledger errors."""
    pass


class AlreadyLinkedError(LedgerError):
    """This Discord user already has a linked game name."""
    pass


class NameTakenError(LedgerError):
    """The game name is already linked to a different Discord user."""
    pass


# ------------------------------------------------------------------
# Models
# ------------------------------------------------------------------

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class LedgerMetadata(BaseModel):
    version: str = "1.0"
    created: str = Field(default_factory=_now_iso)
    lastModified: str = Field(default_factory=_now_iso)
    totalUsers: int = 0


class BalanceFile(BaseModel):
    users: Dict[str, float] = Field(default_factory=dict)
    metadata: LedgerMetadata = Field(default_factory=LedgerMetadata)


class LinkFile(BaseModel):
    users: Dict[str, str] = Field(default_factory=dict)
    metadata: LedgerMetadata = Field(default_factory=LedgerMetadata)


class PaymentCredit(BaseModel):
    """Result of crediting an in-game payment to a linked user."""

    user_id: str
    game_name: str
    amount: float
    tax: float
    credited: float
    new_balance: float


def normalize_name(name: str) -> str:
    """Lowercase and strip everything but letters and digits."""
    return re.sub(r"[^a-z0-9]", "", (name or "").lower())


# ------------------------------------------------------------------
# Repository
# ------------------------------------------------------------------

class LedgerRepository:
    """File-backed balances and account links.

    Usage:
        ledger = LedgerRepository("data")
        ledger.link("1234", "Steve")
        ledger.credit_payment("steve", 1000)   # → 900 credited after tax
        ledger.leaderboard(10)
    """

    BALANCES_FILE = "user_money.json"
    LINKS_FILE = "linked_users.json"

    def __init__(self, data_dir: str = "data", tax_rate: float = DEFAULT_TAX_RATE):
        self.data_dir = data_dir
        self.tax_rate = tax_rate
        os.makedirs(data_dir, exist_ok=True)
        self._balances: BalanceFile = self._load(self.BALANCES_FILE, BalanceFile)
        self._links: LinkFile = self._load(self.LINKS_FILE, LinkFile)
        logger.info(
            f"Ledger loaded: {len(self._balances.users)} balances, "
            f"{len(self._links.users)} links from {data_dir}"
        )

    # --- persistence ---

    def _path(self, filename: str) -> str:
        return os.path.join(self.data_dir, filename)

    def _load(self, filename: str, model):
        path = self._path(filename)
        if not os.path.exists(path):
            data = model()
            self._save(filename, data)
            return data
        try:
            with open(path, "r", encoding="utf-8") as f:
                return model.model_validate(json.load(f))
        except (OSError, ValueError) as e:
            # Keep the broken file for inspection, start clean
            logger.error(f"Could not load {path}: {e}")
            backup = f"{path}.corrupt"
            try:
                os.replace(path, backup)
                logger.warning(f"Moved unreadable ledger file to {backup}")
            except OSError:
                pass
            data = model()
            self._save(filename, data)
            return data

    def _save(self, filename: str, data) -> None:
        data.metadata.lastModified = _now_iso()
        data.metadata.totalUsers = len(data.users)
        path = self._path(filename)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data.model_dump(), f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)

    def _save_balances(self):
        self._save(self.BALANCES_FILE, self._balances)

    def _save_links(self):
        self._save(self.LINKS_FILE, self._links)

    # --- balances ---

    def get_balance(self, user_id) -> float:
        return self._balances.users.get(str(user_id), 0.0)

    def add(self, user_id, amount: float) -> float:
        """Add (or subtract, if negative) and return the new balance."""
        key = str(user_id)
        new_balance = self._balances.users.get(key, 0.0) + amount
        self._balances.users[key] = new_balance
        self._save_balances()
        logger.info(f"Added {amount} to {key}, balance now {new_balance}")
        return new_balance

    def reset(self, user_id) -> float:
        """Zero a balance. Returns what it was."""
        key = str(user_id)
        previous = self._balances.users.get(key, 0.0)
        self._balances.users[key] = 0.0
        self._save_balances()
        logger.info(f"Reset balance for {key} (was {previous})")
        return previous

    def leaderboard(self, limit: int = 10) -> List[Tuple[str, float]]:
        ranked = sorted(
            ((uid, bal) for uid, bal in self._balances.users.items() if bal > 0),
            key=lambda pair: pair[1],
            reverse=True,
        )
        return ranked[:limit]

    # --- links ---

    def get_link(self, user_id) -> Optional[str]:
        return self._links.users.get(str(user_id))

    def find_by_game_name(self, game_name: str) -> Optional[str]:
        """Discord id linked to a game name (case-insensitive, punctuation-blind)."""
        wanted = normalize_name(game_name)
        lowered = (game_name or "").lower()
        for user_id, linked in self._links.users.items():
            if normalize_name(linked) == wanted or linked.lower() == lowered:
                return user_id
        return None

    def link(self, user_id, game_name: str) -> None:
        key = str(user_id)
        game_name = game_name.strip()
        if not game_name:
            raise LedgerError("Game name must not be empty")
        if key in self._links.users:
            raise AlreadyLinkedError(self._links.users[key])
        owner = self.find_by_game_name(game_name)
        if owner is not None and owner != key:
            raise NameTakenError(game_name)
        self._links.users[key] = game_name
        self._save_links()
        logger.info(f"Linked {key} to {game_name}")

    def unlink(self, user_id) -> Optional[str]:
        removed = self._links.users.pop(str(user_id), None)
        if removed is not None:
            self._save_links()
            logger.info(f"Unlinked {user_id} from {removed}")
        return removed

    def linked_balances(self) -> List[Tuple[str, str, float]]:
        """(user_id, game_name, balance) for every linked user with a positive balance."""
        rows = []
        for user_id, game_name in self._links.users.items():
            balance = self.get_balance(user_id)
            if balance > 0:
                rows.append((user_id, game_name, balance))
        return rows

    # --- payments ---

    def credit_payment(self, sender: str, amount: float) -> Optional[PaymentCredit]:
        """Credit an in-game payment, minus tax, to whoever linked `sender`.

        Returns None if the sender is not linked or the amount is not positive.
        """
        if amount <= 0:
            return None
        user_id = self.find_by_game_name(sender)
        if user_id is None:
            logger.info(f"Payment from unlinked player {sender} ignored")
            return None

        tax = amount * self.tax_rate
        credited = amount - tax
        new_balance = self.add(user_id, credited)
        logger.info(f"Credited {credited} to {user_id} from {sender} (tax {tax})")
        return PaymentCredit(
            user_id=user_id,
            game_name=self._links.users[user_id],
            amount=amount,
            tax=tax,
            credited=credited,
            new_balance=new_balance,
        )
