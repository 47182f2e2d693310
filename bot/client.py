"""
Game Bridge Bot — Discord Bot Client

Core bot setup, event handling and process wiring. Slash commands live in
Cogs (bot/cogs/). The game connection lives in game/: one
ConnectionStateMachine per process, attached to the bot so cogs reach it
via self.bot.connection.
"""

import os
import signal
import asyncio
import logging
from collections import deque
import discord
from discord.ext import commands
from dotenv import load_dotenv

from bot.bridge import DiscordBridge
from game.config import GameConfig
from game.connection import ConnectionStateMachine
from game.monitor import LivenessMonitor
from game.relay_transport import RelayTransport
from tools.ledger import LedgerRepository

logger = logging.getLogger("GameBridgeBot")

# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------
load_dotenv()
DISCORD_TOKEN = os.getenv("DISCORD_BOT_TOKEN")
DISCORD_GUILD_ID = os.getenv("DISCORD_GUILD_ID")
DISCORD_OWNER_ID = os.getenv("DISCORD_OWNER_ID")
DISCORD_STATUS_CHANNEL_ID = os.getenv("DISCORD_STATUS_CHANNEL_ID")
DISCORD_CHAT_RELAY_CHANNEL_ID = os.getenv("DISCORD_CHAT_RELAY_CHANNEL_ID")
DISCORD_CHAT_RELAY_CHANNEL_ID_2 = os.getenv("DISCORD_CHAT_RELAY_CHANNEL_ID_2")
LEDGER_DIR = os.getenv("LEDGER_DIR", "data")

AUTHORIZED_USER_IDS = set()
if DISCORD_OWNER_ID:
    AUTHORIZED_USER_IDS.add(DISCORD_OWNER_ID.strip())
for raw_id in os.getenv("AUTHORIZED_USER_IDS", "").split(","):
    if raw_id.strip():
        AUTHORIZED_USER_IDS.add(raw_id.strip())

RELAY_CHANNEL_IDS = {c for c in (DISCORD_CHAT_RELAY_CHANNEL_ID, DISCORD_CHAT_RELAY_CHANNEL_ID_2) if c}

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
if not os.path.exists("logs"):
    os.makedirs("logs")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.FileHandler("logs/game_bridge.log", encoding="utf-8"),
        logging.StreamHandler(),
    ],
)

# ---------------------------------------------------------------------------
# Game config & ledger
# ---------------------------------------------------------------------------
game_config = GameConfig.from_env()
ledger = LedgerRepository(data_dir=LEDGER_DIR)
logger.info(
    f"Game target: {game_config.host}:{game_config.port} as {game_config.username or '(relay default)'} "
    f"via {game_config.relay_url}"
)

# ---------------------------------------------------------------------------
# Discord Bot Instance
# ---------------------------------------------------------------------------
intents = discord.Intents.default()
intents.message_content = True
bot = commands.Bot(command_prefix="!", intents=intents, help_command=None)

# ---------------------------------------------------------------------------
# Connection core
# ---------------------------------------------------------------------------
bridge = DiscordBridge(
    bot,
    ledger,
    relay_channel_id=DISCORD_CHAT_RELAY_CHANNEL_ID,
    status_channel_id=DISCORD_STATUS_CHANNEL_ID,
    owner_id=DISCORD_OWNER_ID,
    target_server=game_config.target_server,
)
connection = ConnectionStateMachine(game_config, RelayTransport.factory, listener=bridge)
monitor = LivenessMonitor(
    connection,
    interval=game_config.monitor_interval,
    grace=game_config.monitor_grace,
)

# ---------------------------------------------------------------------------
# Reliability: Message deduplication
# ---------------------------------------------------------------------------
_seen_messages: deque = deque(maxlen=1000)  # Bounded deque of recent message IDs
_shutting_down = False


def is_authorized(user_id) -> bool:
    return str(user_id) in AUTHORIZED_USER_IDS


# ---------------------------------------------------------------------------
# Attach shared services to bot so cogs can access them via self.bot
# ---------------------------------------------------------------------------
bot.game_config = game_config
bot.ledger = ledger
bot.bridge = bridge
bot.connection = connection
bot.monitor = monitor
bot.is_authorized = is_authorized


# ---------------------------------------------------------------------------
# Discord → game relay
# ---------------------------------------------------------------------------
async def _react(message: discord.Message, emoji: str):
    try:
        await message.add_reaction(emoji)
    except discord.HTTPException:
        pass  # Missing permissions or deleted message


async def relay_to_game(message: discord.Message):
    """Send a relay-channel message into game chat, with reactions as receipts."""
    await _react(message, "\U0001f440")  # eyes: received

    if not connection.is_online_and_ready():
        await _react(message, "❌")
        return

    content = message.content.strip()
    if content:
        line = f"[Discord] {message.author.name}: {content}"
    else:
        line = f"[Discord] {message.author.name} sent an empty message"

    if await connection.send_chat(line):
        logger.info(f"Relayed to game: {line}")
        await _react(message, "✅")
    else:
        await _react(message, "❌")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------
@bot.event
async def on_ready():
    logger.info(f"Logged in as {bot.user.name} ({bot.user.id})")

    # Guild sync is instant, global sync can take an hour
    try:
        if DISCORD_GUILD_ID:
            guild = discord.Object(id=int(DISCORD_GUILD_ID))
            bot.tree.copy_global_to(guild=guild)
            synced = await bot.tree.sync(guild=guild)
        else:
            synced = await bot.tree.sync()
        logger.info(f"Synced {len(synced)} slash command(s).")
    except Exception as e:
        logger.error(f"Slash command sync failed: {e}")

    # on_ready fires again after gateway reconnects; both calls are no-ops then
    connection.request_connect()
    monitor.start()


@bot.event
async def on_message(message):
    if message.author == bot.user:
        return

    # Ignore other bots
    if message.author.bot:
        return

    # Discord can re-deliver messages on gateway reconnects
    if message.id in _seen_messages:
        return
    _seen_messages.append(message.id)

    if str(message.channel.id) in RELAY_CHANNEL_IDS:
        await relay_to_game(message)
        return

    if message.content.startswith("!"):
        await bot.process_commands(message)


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------
async def shutdown(reason: str):
    """Stop the game session cleanly, then log out of Discord."""
    global _shutting_down
    if _shutting_down:
        return
    _shutting_down = True
    logger.info(f"Shutting down ({reason})...")
    monitor.stop()
    try:
        await connection.shutdown()
    except Exception as e:
        logger.error(f"Error stopping game connection: {e}", exc_info=True)
    await bot.close()


def _install_handlers(loop: asyncio.AbstractEventLoop):
    loop.set_exception_handler(connection.handle_loop_exception)
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda s=sig: asyncio.ensure_future(shutdown(s.name)))
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt
            pass


# ---------------------------------------------------------------------------
# Cog Loading & Entry Point
# ---------------------------------------------------------------------------
async def load_cogs():
    """Load all Cog extensions."""
    await bot.load_extension("bot.cogs.game_cog")
    await bot.load_extension("bot.cogs.economy_cog")
    logger.info("All Cogs loaded.")


async def main():
    """Async entry point — load cogs then start the bot."""
    _install_handlers(asyncio.get_running_loop())
    try:
        async with bot:
            await load_cogs()
            await bot.start(DISCORD_TOKEN)
    finally:
        monitor.stop()
        await connection.shutdown()


def run():
    """Synchronous entry point for scripts."""
    if not DISCORD_TOKEN:
        print("Error: DISCORD_BOT_TOKEN not found via os.getenv")
        return
    asyncio.run(main())


if __name__ == "__main__":
    run()
