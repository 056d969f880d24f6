"""
TapCoins — Tap-to-Earn Economy Core
====================================
Keeps a player's progress (coins, taps, energy, level, rank, achievements)
under rapid local mutation and mirrors it to a lagging remote store through
debounced, batched writes.  The presentation layer only ever reads a
snapshot and calls ``tap()``.

Package layout::

    tapcoins/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Level / rank breakpoints (canonical tables)
    ├── errors.py          # Rejections and gateway failures
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # users + leaderboard_entries tables
    ├── engine/
    │   ├── progression.py # level_for_taps / rank_for_coins
    │   ├── energy.py      # Refill decision + polling regenerator
    │   ├── economy.py     # UserProgress + the pure tap transition
    │   ├── achievements.py # Catalog + single-pass evaluator
    │   ├── leaderboard.py # Ranked projection of top players
    │   └── scheduler.py   # Cancellable timers (asyncio or manual clock)
    ├── services/
    │   ├── gateway.py     # PersistenceGateway interface + documents
    │   ├── memory_gateway.py # In-memory and JSON-file stores
    │   ├── sql_gateway.py # SQLAlchemy-backed store
    │   ├── backends.py    # Gateway selection from config
    │   ├── batcher.py     # Debounced write accumulation
    │   ├── notifications.py # Transient achievement popups
    │   └── session.py     # TapSession — the stateful engine
    └── app/
        ├── render.py      # Plain-text views of session read models
        └── __main__.py    # Console driver (python -m tapcoins.app)
"""

__version__ = "0.1.0"
