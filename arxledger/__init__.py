"""
ArxLedger — Points-Ledger Reconciliation & Arena Payout Engine
===============================================================
Treats the append-only event tables of the ARX mining platform (mining
sessions, tasks, check-ins, social submissions, referrals, arena stakes and
earnings, Nexus transfers) as the source of truth, recomputes every user's
canonical balance, heals drift in the cached ``user_points`` row, and
idempotently restores missing arena payouts for resolved battles.

Package layout::

    arxledger/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Categories, modes, numeric helpers
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, session helper, ping
    │   └── models.py      # Event tables, balances, earnings, audit log
    ├── engine/
    │   ├── aggregator.py  # Paged sums / fetches over capped pages
    │   ├── balance.py     # Canonical balance projection (pure)
    │   ├── drift.py       # Drift classification policy (pure)
    │   └── payout.py      # Proportional battle payouts (pure)
    └── services/
        ├── ledger_writer.py          # Audited balance / earnings writes
        ├── earnings_service.py       # audit + restore_earnings passes
        └── reconciliation_service.py # reconcile() entry point
"""

__version__ = "0.1.0"
