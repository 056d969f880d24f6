"""
tapcoins.app.__main__ — Entry point for ``python -m tapcoins.app``
===================================================================

Wiring:
1. Load .env (identity, DATABASE_URL).
2. Load config.yaml (economy tuning, backend choice).
3. Build the persistence gateway named by the config.
4. Start a TapSession for the player named in the environment.
5. Read commands from stdin until ``quit`` or EOF.
6. Close the session (flushes pending writes) and the gateway.

Commands::

    tap [n]        tap once, or n times
    stats          show progress
    board          show the leaderboard
    achievements   show the achievement catalog
    quit
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from tapcoins.app.render import (
    render_achievements,
    render_leaderboard,
    render_outcome,
    render_stats,
)
from tapcoins.config import load_config
from tapcoins.engine.achievements import DEFAULT_CATALOG, load_catalog
from tapcoins.services.backends import build_gateway
from tapcoins.services.session import PlayerIdentity, TapSession

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("tapcoins")

MAX_TAPS_PER_COMMAND = 10_000


def identity_from_env() -> PlayerIdentity | None:
    """Build the player identity from ``TAPCOINS_*`` variables, if set."""
    user_id = os.getenv("TAPCOINS_USER_ID")
    if not user_id:
        return None
    username = os.getenv("TAPCOINS_USERNAME") or None
    return PlayerIdentity(
        id=user_id,
        display_name=os.getenv("TAPCOINS_DISPLAY_NAME") or username or f"Player {user_id}",
        username=username,
        referral_code=os.getenv("TAPCOINS_REFERRAL_CODE") or None,
    )


def handle_command(session: TapSession, line: str) -> str | None:
    """Run one console command; ``None`` means quit."""
    command, _, arg = line.strip().partition(" ")
    command = command.lower()

    if command in ("quit", "exit"):
        return None
    if command == "tap":
        try:
            count = int(arg) if arg.strip() else 1
        except ValueError:
            return f"Not a number: {arg!r}"
        count = max(1, min(count, MAX_TAPS_PER_COMMAND))
        outcomes = session.tap_many(count)
        accepted = sum(1 for o in outcomes if o.accepted)
        if count == 1:
            return render_outcome(outcomes[0])
        unlocked = [a for o in outcomes for a in o.unlocked]
        summary = f"{accepted}/{count} taps accepted"
        if unlocked:
            summary += f", unlocked: {', '.join(unlocked)}"
        return summary
    if command == "stats":
        state = session.snapshot()
        return render_stats(state, session.time_until_refill()) if state else "No player."
    if command == "board":
        return render_leaderboard(session.leaderboard_snapshot())
    if command == "achievements":
        state = session.snapshot()
        return render_achievements(state, session.catalog) if state else "No player."
    if not command:
        return ""
    return f"Unknown command {command!r}. Try: tap [n], stats, board, achievements, quit"


async def run() -> int:
    # 1. Environment variables.
    load_dotenv()

    # 2. Soft configuration.
    cfg = load_config(os.getenv("TAPCOINS_CONFIG", "config.yaml"))
    logger.info("Config loaded — %s (%s backend)", cfg.app_name, cfg.backend)
    catalog = load_catalog(cfg.achievements_file) if cfg.achievements_file else DEFAULT_CATALOG

    # 3. Persistence.
    gateway = build_gateway(cfg)

    # 4. Session.
    who = identity_from_env()
    if who is None:
        logger.critical(
            "TAPCOINS_USER_ID is not set.  "
            "Copy .env.example → .env and set a player id."
        )
        await gateway.close()
        return 1

    try:
        async with TapSession(gateway, config=cfg, catalog=catalog) as session:
            if await session.start(who) is None:
                logger.critical("Could not start a session for %s.", who.id)
                return 1
            session.notifier.subscribe(
                lambda a: print(f"\n{a.icon} Achievement unlocked: {a.name}") if a else None
            )

            # 5. Command loop.
            while True:
                try:
                    line = await asyncio.to_thread(input, "> ")
                except EOFError:
                    break
                reply = handle_command(session, line)
                if reply is None:
                    break
                if reply:
                    print(reply)
    finally:
        # 6. Gateway teardown after the session flushed.
        await gateway.close()
    return 0


def main() -> None:
    """Bootstrap and run the console session."""
    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
