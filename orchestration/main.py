"""
Game Bridge Bot — Entry Point

Thin wrapper that delegates to bot/client.py.

Kept out of the package root so the script directory that Python puts
on sys.path[0] never shadows the top-level 'bot' package.

To run: python orchestration/main.py
   or:  python -m bot.client
   or:  game-bridge   (console script from pyproject.toml)
"""

from bot.client import run

if __name__ == "__main__":
    run()
