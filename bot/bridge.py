"""
Discord Bridge — turns connection notifications into Discord activity.

  on_chat_line               → post to the relay channel
  on_payment_detected        → credit the ledger, DM the payer
  on_server_confirmed        → note in the status channel
  on_connection_state_changed→ bot presence
  on_auth_required           → DM the owner the device code
"""

import logging
from typing import Optional

import discord
from discord.ext import commands

from game.connection import ConnectionListener, ConnectionState
from tools.ledger import LedgerRepository
from tools.money import format_number_short

logger = logging.getLogger("DiscordBridge")

NO_MENTIONS = discord.AllowedMentions.none()

_PRESENCE = {
    ConnectionState.ONLINE: (discord.Status.online, "Online in game"),
    ConnectionState.CONNECTING: (discord.Status.idle, "Connecting..."),
    ConnectionState.CLEANING_UP: (discord.Status.idle, "Reconnecting..."),
    ConnectionState.BACKOFF: (discord.Status.idle, "Reconnecting..."),
    ConnectionState.IDLE: (discord.Status.dnd, "Stopped"),
}


class DiscordBridge(ConnectionListener):
    """ConnectionListener that talks to Discord."""

    def __init__(
        self,
        bot: commands.Bot,
        ledger: LedgerRepository,
        relay_channel_id: Optional[str] = None,
        status_channel_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        target_server: str = "",
    ):
        self.bot = bot
        self.ledger = ledger
        self.relay_channel_id = relay_channel_id
        self.status_channel_id = status_channel_id
        self.owner_id = owner_id
        self.target_server = target_server

    def _channel(self, channel_id: Optional[str]):
        if not channel_id:
            return None
        channel = self.bot.get_channel(int(channel_id))
        if channel is None:
            logger.warning(f"Channel {channel_id} not found")
        return channel

    async def _dm(self, user_id, content: str) -> bool:
        try:
            user = await self.bot.fetch_user(int(user_id))
            await user.send(content)
            return True
        except discord.HTTPException as e:
            logger.info(f"Could not DM {user_id}: {e}")
            return False

    async def send_status(self, content: str):
        """Post a line to the status channel, if one is configured."""
        channel = self._channel(self.status_channel_id)
        if channel is None:
            return
        await channel.send(content, allowed_mentions=NO_MENTIONS)

    # ------------------------------------------------------------------
    # ConnectionListener
    # ------------------------------------------------------------------

    async def on_chat_line(self, text: str):
        channel = self._channel(self.relay_channel_id)
        if channel is None:
            return
        await channel.send(discord.utils.escape_markdown(text)[:2000], allowed_mentions=NO_MENTIONS)

    async def on_payment_detected(self, sender: str, amount: float):
        credit = self.ledger.credit_payment(sender, amount)
        if credit is None:
            return
        await self._dm(
            credit.user_id,
            f"💰 Payment received from **{credit.game_name}**: {format_number_short(credit.amount)}\n"
            f"Tax ({self.ledger.tax_rate:.0%}): {format_number_short(credit.tax)}\n"
            f"Credited: **{format_number_short(credit.credited)}**\n"
            f"New balance: **{format_number_short(credit.new_balance)}**",
        )

    async def on_server_confirmed(self):
        await self.send_status(f"✅ Connected to **{self.target_server}**")

    async def on_connection_state_changed(self, state: ConnectionState):
        if not self.bot.is_ready():
            return
        status, text = _PRESENCE[state]
        await self.bot.change_presence(status=status, activity=discord.Game(name=text))

    async def on_auth_required(self, uri: str, code: str):
        logger.warning(f"Game login needs device authentication: {uri} code {code}")
        if not self.owner_id:
            return
        await self._dm(
            self.owner_id,
            f"🔐 Game account login required.\nGo to: {uri}\nEnter code: `{code}`",
        )
