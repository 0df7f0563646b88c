# Kanban sync: durable local board state with best-effort cross-device sync
#
# Components:
#   schema.py     - Data model (BoardDocument, Card, Column, Priority, Effort)
#   migrations.py - Record parsing and schema upgrades (v1 -> current)
#   errors.py     - Sync error taxonomy
#   store.py      - SQLite-backed local persistence (kanban_v<n> records)
#   adapters.py   - Remote adapter interface, file and manual tiers, tier selection
#   gist.py       - GitHub Gist adapter
#   sync.py       - SyncState and the debounced SyncCoordinator
#   board.py      - KanbanBoard: UI-facing facade and composition root
#   config.py     - YAML/env configuration
