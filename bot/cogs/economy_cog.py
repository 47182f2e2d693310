"""
Economy Cog — linked accounts, balances and payouts.

Balances are credited from in-game payments (see bot/bridge.py) and paid
back out in game with /pay, either by /payout or by the daily payout loop.
"""

import logging
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands, tasks

from tools.ledger import AlreadyLinkedError, LedgerError, NameTakenError
from tools.money import format_number_short, parse_money_amount
from tools.payout import DailyPayoutSchedule, PayoutSummary, pay_user, run_payout

logger = logging.getLogger("EconomyCog")

NOT_AUTHORIZED = "You do not have permission to use this command."
NOT_READY = "The game client is not online or not fully initialized. Payouts need a live session."


class EconomyCog(commands.Cog, name="Economy"):
    """Ledger commands and the daily payout."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.ledger = bot.ledger
        self.machine = bot.connection
        self.bridge = bot.bridge
        self.schedule = DailyPayoutSchedule()
        self._daily_payout.start()

    def cog_unload(self):
        self._daily_payout.cancel()

    async def _deny(self, interaction: discord.Interaction) -> bool:
        if self.bot.is_authorized(interaction.user.id):
            return False
        await interaction.response.send_message(NOT_AUTHORIZED, ephemeral=True)
        return True

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    @app_commands.command(name="link", description="Link your in-game account")
    @app_commands.describe(username="Your in-game name")
    async def link_cmd(self, interaction: discord.Interaction, username: str):
        try:
            self.ledger.link(interaction.user.id, username)
        except AlreadyLinkedError as e:
            await interaction.response.send_message(
                f"❌ You are already linked to **{e}**. Contact staff to change it.", ephemeral=True
            )
            return
        except NameTakenError:
            await interaction.response.send_message(
                f"❌ **{username}** is already linked to another Discord account.", ephemeral=True
            )
            return
        except LedgerError as e:
            await interaction.response.send_message(f"❌ {e}", ephemeral=True)
            return
        await interaction.response.send_message(f"✅ Linked to **{username.strip()}**.", ephemeral=True)

    @app_commands.command(name="account", description="Show your linked account and balance")
    async def account_cmd(self, interaction: discord.Interaction):
        linked = self.ledger.get_link(interaction.user.id)
        if not linked:
            await interaction.response.send_message(
                "❌ Link your in-game account first with `/link <username>`.", ephemeral=True
            )
            return
        balance = self.ledger.get_balance(interaction.user.id)
        await interaction.response.send_message(
            f"🎮 **Account:** {linked}\n💰 **Balance:** {format_number_short(balance)}\n"
            f"Balances are paid out daily at {self.schedule.label}.",
            ephemeral=True,
        )

    # ------------------------------------------------------------------
    # Staff balance tools
    # ------------------------------------------------------------------
    @app_commands.command(name="bal", description="Show a user's balance")
    @app_commands.describe(user="Discord user")
    async def bal_cmd(self, interaction: discord.Interaction, user: discord.User):
        if await self._deny(interaction):
            return
        await interaction.response.send_message(
            f"💰 {user.mention}: **{format_number_short(self.ledger.get_balance(user.id))}** "
            f"(linked: {self.ledger.get_link(user.id) or 'Not linked'})",
            ephemeral=True,
            allowed_mentions=discord.AllowedMentions.none(),
        )

    @app_commands.command(name="add", description="Add money to a user's balance")
    @app_commands.describe(user="Discord user", amount="Amount, e.g. 1500, 2.5k, 1m")
    async def add_cmd(self, interaction: discord.Interaction, user: discord.User, amount: str):
        if await self._deny(interaction):
            return
        value = parse_money_amount(amount)
        if value is None or value <= 0:
            await interaction.response.send_message("❌ Please enter a valid positive amount.", ephemeral=True)
            return
        previous = self.ledger.get_balance(user.id)
        new_balance = self.ledger.add(user.id, value)
        logger.info(f"{interaction.user} added {value} to {user.id}")
        await interaction.response.send_message(
            f"✅ Added **{format_number_short(value)}** to {user.mention}\n"
            f"Previous: {format_number_short(previous)} → New: {format_number_short(new_balance)}",
            ephemeral=True,
            allowed_mentions=discord.AllowedMentions.none(),
        )

    @app_commands.command(name="reset", description="Reset a user's balance to zero")
    @app_commands.describe(user="Discord user")
    async def reset_cmd(self, interaction: discord.Interaction, user: discord.User):
        if await self._deny(interaction):
            return
        previous = self.ledger.reset(user.id)
        logger.info(f"{interaction.user} reset balance of {user.id}")
        await interaction.response.send_message(
            f"✅ Reset {user.mention}: {format_number_short(previous)} → 0",
            ephemeral=True,
            allowed_mentions=discord.AllowedMentions.none(),
        )

    @app_commands.command(name="leaderboard", description="Top 10 balances")
    async def leaderboard_cmd(self, interaction: discord.Interaction):
        top = self.ledger.leaderboard(10)
        if not top:
            await interaction.response.send_message("📊 No balances yet!", ephemeral=True)
            return
        medals = ["🥇", "🥈", "🥉"]
        lines = ["🏆 **Leaderboard**"]
        for i, (user_id, balance) in enumerate(top):
            rank = medals[i] if i < len(medals) else f"{i + 1}."
            linked = self.ledger.get_link(user_id) or "Not linked"
            lines.append(f"{rank} <@{user_id}> - {format_number_short(balance)} ({linked})")
        await interaction.response.send_message(
            "\n".join(lines), allowed_mentions=discord.AllowedMentions.none()
        )

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------
    async def _notify_paid(self, summary: PayoutSummary, note: str):
        for entry in summary.paid:
            try:
                user = await self.bot.fetch_user(int(entry.user_id))
                await user.send(
                    f"💰 {note}: **{format_number_short(entry.amount)}** sent to **{entry.game_name}**."
                )
            except discord.HTTPException as e:
                logger.info(f"Could not DM {entry.user_id}: {e}")

    @app_commands.command(name="payout", description="Pay balances out in game")
    @app_commands.describe(target="Everyone, or one user", user="User to pay (when target is user)")
    @app_commands.choices(target=[
        app_commands.Choice(name="All users", value="all"),
        app_commands.Choice(name="Specific user", value="user"),
    ])
    async def payout_cmd(
        self,
        interaction: discord.Interaction,
        target: app_commands.Choice[str],
        user: Optional[discord.User] = None,
    ):
        if await self._deny(interaction):
            return
        if not self.machine.is_online_and_ready():
            await interaction.response.send_message(NOT_READY, ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)

        if target.value == "user":
            if user is None:
                await interaction.followup.send("❌ Pick a user to pay.", ephemeral=True)
                return
            entry = await pay_user(self.ledger, self.machine.send_chat, user.id)
            if entry is None:
                await interaction.followup.send(
                    f"❌ Nothing paid to {user.mention}: no balance, no linked account, or the game is not ready.",
                    ephemeral=True,
                    allowed_mentions=discord.AllowedMentions.none(),
                )
                return
            await self._notify_paid(PayoutSummary(paid=[entry]), "Manual payout")
            await interaction.followup.send(
                f"✅ Paid {format_number_short(entry.amount)} to {entry.game_name}.", ephemeral=True
            )
            return

        summary = await run_payout(self.ledger, self.machine.send_chat)
        await self._notify_paid(summary, "Manual payout")
        lines = [f"✅ {e.game_name}: {format_number_short(e.amount)}" for e in summary.paid]
        lines += [f"❌ <@{uid}>: not paid" for uid in summary.failed]
        lines.append(f"**{summary.count} users, {format_number_short(summary.total)} total**")
        await interaction.followup.send(
            "\n".join(lines)[:2000], ephemeral=True, allowed_mentions=discord.AllowedMentions.none()
        )

    @tasks.loop(minutes=1)
    async def _daily_payout(self):
        """Run the daily payout once the schedule says it is due."""
        if not self.schedule.is_due():
            return
        self.schedule.mark_done()
        if not self.machine.is_online_and_ready():
            logger.warning("Daily payout due but the game is not ready, skipping")
            return

        logger.info(f"Starting daily payout ({self.schedule.label})")
        try:
            summary = await run_payout(self.ledger, self.machine.send_chat)
            await self._notify_paid(summary, f"Daily payout ({self.schedule.label})")
            if summary.count:
                await self.bridge.send_status(
                    f"📊 Daily payout: {summary.count} users paid, "
                    f"{format_number_short(summary.total)} total"
                )
        except Exception as e:
            logger.error(f"Daily payout error: {e}", exc_info=True)

    @_daily_payout.before_loop
    async def _before_daily_payout(self):
        await self.bot.wait_until_ready()


async def setup(bot: commands.Bot):
    await bot.add_cog(EconomyCog(bot))
