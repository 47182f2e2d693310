"""
Game Cog — slash commands that drive the game connection.

/chat, /accept, /emerald, /stats, /status, /stop, /start.
Everything except /status needs an authorized user. Commands never touch
the transport: they go through the ConnectionStateMachine and reply
"not ready" when it is not online.
"""

import logging
import discord
from discord import app_commands
from discord.ext import commands

from game.sequencer import SequenceKind, SequenceOutcome
from tools.money import format_uptime

logger = logging.getLogger("GameCog")

NOT_AUTHORIZED = "You do not have permission to use this command."
NOT_READY = "The game client is not online or not fully initialized. Please try again in a moment."

_OUTCOME_MESSAGES = {
    SequenceOutcome.CLICKED: "✅ Clicked the marker in slot {slot}. Expect a server transfer.",
    SequenceOutcome.MARKER_NOT_FOUND: "⚠️ The window opened but had no marker item.",
    SequenceOutcome.TIMED_OUT: "⚠️ No window opened in time.",
    SequenceOutcome.UNAVAILABLE: NOT_READY,
    SequenceOutcome.CLICK_FAILED: "❌ Clicking the marker failed.",
    SequenceOutcome.FAILED: "❌ The sequence failed. Check the logs.",
    SequenceOutcome.ABORTED: "⚠️ The session ended before the sequence finished.",
}


class GameCog(commands.Cog, name="Game"):
    """Connection control and in-game chat."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.machine = bot.connection
        self.monitor = bot.monitor

    async def _check(self, interaction: discord.Interaction, need_ready: bool = True) -> bool:
        """Reply and return False if the user may not run this, or the game is not ready."""
        if not self.bot.is_authorized(interaction.user.id):
            await interaction.response.send_message(NOT_AUTHORIZED, ephemeral=True)
            return False
        if need_ready and not self.machine.is_online_and_ready():
            await interaction.response.send_message(NOT_READY, ephemeral=True)
            return False
        return True

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------
    @app_commands.command(name="chat", description="Send a message in game chat")
    @app_commands.describe(message="Text to send")
    async def chat_cmd(self, interaction: discord.Interaction, message: str):
        logger.info(f"/chat from {interaction.user}")
        if not await self._check(interaction):
            return
        await interaction.response.defer(ephemeral=True)
        if await self.machine.send_chat(message):
            await interaction.followup.send(f"✅ Sent: `{message}`", ephemeral=True)
        else:
            await interaction.followup.send(NOT_READY, ephemeral=True)

    @app_commands.command(name="stats", description="Check a player's in-game balance")
    @app_commands.describe(username="Player name")
    async def stats_cmd(self, interaction: discord.Interaction, username: str):
        if not await self._check(interaction):
            return
        await interaction.response.defer(ephemeral=True)
        if await self.machine.send_chat(f"/bal {username}"):
            await interaction.followup.send(
                f"✅ Sent `/bal {username}`. The answer will show up in the relay channel.",
                ephemeral=True,
            )
        else:
            await interaction.followup.send(NOT_READY, ephemeral=True)

    # ------------------------------------------------------------------
    # Window sequences
    # ------------------------------------------------------------------
    async def _run_sequence(self, interaction: discord.Interaction, kind: SequenceKind):
        logger.info(f"/{kind.value} from {interaction.user}")
        if not await self._check(interaction):
            return
        await interaction.response.defer(ephemeral=True)
        result = await self.machine.run_interaction_sequence(kind)
        text = _OUTCOME_MESSAGES[result.outcome].format(slot=result.slot)
        await interaction.followup.send(text, ephemeral=True)

    @app_commands.command(name="accept", description="Accept a teleport request")
    async def accept_cmd(self, interaction: discord.Interaction):
        await self._run_sequence(interaction, SequenceKind.ACCEPT)

    @app_commands.command(name="emerald", description="Run the server-selector sequence")
    async def emerald_cmd(self, interaction: discord.Interaction):
        await self._run_sequence(interaction, SequenceKind.EMERALD)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @app_commands.command(name="status", description="Show the game connection status")
    async def status_cmd(self, interaction: discord.Interaction):
        await interaction.response.send_message(self.format_status(), ephemeral=True)

    def format_status(self) -> str:
        status = self.machine.get_status()
        lines = [
            f"**State:** {status['state']}" + (" (ready)" if status["ready"] else ""),
            f"**Account:** {status['username'] or 'N/A'}",
            f"**Online for:** {format_uptime(status['online_for']) if status['online_for'] is not None else 'N/A'}",
            f"**Process uptime:** {format_uptime(status['process_uptime'])}",
            f"**Reconnect attempts:** {status['attempts']}",
            f"**Sessions created:** {status['sessions_created']}",
        ]
        if status["manual_stop"]:
            lines.append("**Manually stopped:** yes")
        if status["last_disconnect"]:
            lines.append(f"**Last disconnect:** {status['last_disconnect']}")
        if status["last_delay"] is not None and status["state"] == "backoff":
            lines.append(f"**Next retry delay:** {status['last_delay']:.1f}s")
        lines.append(f"**Liveness monitor:** {'running' if self.monitor.running else 'stopped'}")
        return "\n".join(lines)

    @app_commands.command(name="stop", description="Disconnect from the game and stay offline")
    async def stop_cmd(self, interaction: discord.Interaction):
        if not await self._check(interaction, need_ready=False):
            return
        await interaction.response.defer(ephemeral=True)
        stopped = await self.machine.request_manual_stop()
        logger.info(f"/stop from {interaction.user} (stopped={stopped})")
        await interaction.followup.send(
            "🛑 Disconnected. Use /start to reconnect." if stopped else "Already stopped.",
            ephemeral=True,
        )

    @app_commands.command(name="start", description="Connect to the game")
    async def start_cmd(self, interaction: discord.Interaction):
        if not await self._check(interaction, need_ready=False):
            return
        started = self.machine.request_connect(manual=True)
        logger.info(f"/start from {interaction.user} (started={started})")
        await interaction.response.send_message(
            "🔌 Connecting..." if started else f"Already {self.machine.state.value}.",
            ephemeral=True,
        )


async def setup(bot: commands.Bot):
    await bot.add_cog(GameCog(bot))
