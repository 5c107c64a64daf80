from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional

from dispatchgate.storage.base import StorageBackend
from dispatchgate.utils.clock import to_iso


NULL_STATE_SENTINEL = "__NULL__"


@dataclass(frozen=True)
class Migration:
    migration_id: str
    description: str
    apply: Callable[[StorageBackend], None]


_CORE_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS tickets (
        id TEXT PRIMARY KEY,
        state TEXT NOT NULL,
        version INTEGER NOT NULL,
        account_id TEXT,
        site_id TEXT,
        summary TEXT,
        description TEXT,
        incident_type TEXT,
        priority TEXT,
        nte_cents INTEGER,
        schedule_options TEXT,
        scheduled_start TEXT,
        scheduled_end TEXT,
        assigned_tech_id TEXT,
        customer_name TEXT,
        customer_phone TEXT,
        customer_email TEXT,
        identity_signature TEXT,
        identity_confidence INTEGER,
        classification_confidence INTEGER,
        sop_handoff_required INTEGER NOT NULL DEFAULT 0,
        sop_handoff_acknowledged INTEGER NOT NULL DEFAULT 0,
        sop_handoff_prompt TEXT,
        checklist_status TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tickets_identity_signature ON tickets(identity_signature, created_at)",
    """
    CREATE TABLE IF NOT EXISTS ticket_state_transitions (
        id TEXT PRIMARY KEY,
        ticket_id TEXT NOT NULL,
        from_state TEXT,
        to_state TEXT NOT NULL,
        tool_name TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        actor_role TEXT NOT NULL,
        request_id TEXT,
        correlation_id TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_transitions_ticket_created ON ticket_state_transitions(ticket_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        id TEXT PRIMARY KEY,
        ticket_id TEXT,
        actor_id TEXT NOT NULL,
        actor_role TEXT NOT NULL,
        actor_type TEXT NOT NULL,
        tool_name TEXT NOT NULL,
        request_id TEXT,
        correlation_id TEXT,
        trace_id TEXT,
        before_state TEXT,
        after_state TEXT,
        outcome TEXT NOT NULL,
        error_code TEXT,
        payload_fingerprint TEXT,
        payload TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_ticket_created ON audit_events(ticket_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS idempotency_records (
        actor_id TEXT NOT NULL,
        request_key TEXT NOT NULL,
        tool_name TEXT NOT NULL,
        payload_fingerprint TEXT NOT NULL,
        status_code INTEGER NOT NULL,
        response_json TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (actor_id, request_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS evidence_items (
        id TEXT PRIMARY KEY,
        ticket_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        uri TEXT NOT NULL,
        checksum TEXT,
        evidence_key TEXT,
        metadata TEXT NOT NULL,
        immutable INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_evidence_ticket_created ON evidence_items(ticket_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS closeout_artifacts (
        id TEXT PRIMARY KEY,
        ticket_id TEXT NOT NULL UNIQUE,
        tool_name TEXT NOT NULL,
        closed_by TEXT NOT NULL,
        evidence_hash TEXT NOT NULL,
        evidence_count INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dispatch_outbox (
        id TEXT PRIMARY KEY,
        aggregate_type TEXT NOT NULL,
        aggregate_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        payload TEXT NOT NULL,
        idempotency_key TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        next_attempt_at TEXT NOT NULL,
        last_error TEXT,
        provider TEXT,
        provider_message_id TEXT,
        provider_status TEXT,
        sent_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_outbox_status_next_attempt ON dispatch_outbox(status, next_attempt_at, created_at)",
    """
    CREATE TABLE IF NOT EXISTS state_transition_rules (
        from_state TEXT NOT NULL,
        to_state TEXT NOT NULL,
        PRIMARY KEY (from_state, to_state)
    )
    """,
]


_APPEND_ONLY_TABLES = (
    ("ticket_state_transitions", "Transition log is append-only"),
    ("audit_events", "Audit log is append-only"),
    ("idempotency_records", "Idempotency records are write-once"),
    ("closeout_artifacts", "Closeout artifacts are immutable"),
)


def _apply_core_tables(storage: StorageBackend) -> None:
    for statement in _CORE_TABLES:
        storage.execute(statement)


def _apply_sqlite_guards(storage: StorageBackend) -> None:
    for table, message in _APPEND_ONLY_TABLES:
        for op in ("UPDATE", "DELETE"):
            storage.execute(
                f"""
                CREATE TRIGGER IF NOT EXISTS {table}_no_{op.lower()}
                BEFORE {op} ON {table}
                BEGIN
                    SELECT RAISE(ABORT, '{message}: {op} not allowed');
                END
                """
            )
    for op in ("UPDATE", "DELETE"):
        storage.execute(
            f"""
            CREATE TRIGGER IF NOT EXISTS evidence_items_immutable_{op.lower()}
            BEFORE {op} ON evidence_items
            WHEN OLD.immutable = 1
            BEGIN
                SELECT RAISE(ABORT, 'Evidence item is immutable: {op} not allowed');
            END
            """
        )
    storage.execute(
        f"""
        CREATE TRIGGER IF NOT EXISTS ticket_state_transitions_require_rule
        BEFORE INSERT ON ticket_state_transitions
        WHEN NOT EXISTS (
            SELECT 1 FROM state_transition_rules r
            WHERE r.from_state = COALESCE(NEW.from_state, '{NULL_STATE_SENTINEL}')
              AND r.to_state = NEW.to_state
        )
        BEGIN
            SELECT RAISE(ABORT, 'Transition not permitted by state_transition_rules');
        END
        """
    )


def _apply_postgres_guards(storage: StorageBackend) -> None:
    storage.execute(
        """
        CREATE OR REPLACE FUNCTION dispatchgate_reject_mutation() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION '% is append-only: % not allowed', TG_TABLE_NAME, TG_OP;
        END;
        $$ LANGUAGE plpgsql
        """
    )
    storage.execute(
        """
        CREATE OR REPLACE FUNCTION dispatchgate_guard_evidence() RETURNS trigger AS $$
        BEGIN
            IF OLD.immutable = 1 THEN
                RAISE EXCEPTION 'Evidence item is immutable: % not allowed', TG_OP;
            END IF;
            IF TG_OP = 'DELETE' THEN
                RETURN OLD;
            END IF;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql
        """
    )
    storage.execute(
        f"""
        CREATE OR REPLACE FUNCTION dispatchgate_require_transition_rule() RETURNS trigger AS $$
        BEGIN
            IF NOT EXISTS (
                SELECT 1 FROM state_transition_rules r
                WHERE r.from_state = COALESCE(NEW.from_state, '{NULL_STATE_SENTINEL}')
                  AND r.to_state = NEW.to_state
            ) THEN
                RAISE EXCEPTION 'Transition not permitted by state_transition_rules';
            END IF;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql
        """
    )
    for table, _message in _APPEND_ONLY_TABLES:
        storage.execute(f"DROP TRIGGER IF EXISTS {table}_append_only ON {table}")
        storage.execute(
            f"""
            CREATE TRIGGER {table}_append_only
            BEFORE UPDATE OR DELETE ON {table}
            FOR EACH ROW EXECUTE FUNCTION dispatchgate_reject_mutation()
            """
        )
    storage.execute("DROP TRIGGER IF EXISTS evidence_items_immutable ON evidence_items")
    storage.execute(
        """
        CREATE TRIGGER evidence_items_immutable
        BEFORE UPDATE OR DELETE ON evidence_items
        FOR EACH ROW EXECUTE FUNCTION dispatchgate_guard_evidence()
        """
    )
    storage.execute("DROP TRIGGER IF EXISTS ticket_state_transitions_require_rule ON ticket_state_transitions")
    storage.execute(
        """
        CREATE TRIGGER ticket_state_transitions_require_rule
        BEFORE INSERT ON ticket_state_transitions
        FOR EACH ROW EXECUTE FUNCTION dispatchgate_require_transition_rule()
        """
    )


def _apply_guards(storage: StorageBackend) -> None:
    if storage.name == "postgres":
        _apply_postgres_guards(storage)
    else:
        _apply_sqlite_guards(storage)


def _seed_transition_rules(storage: StorageBackend) -> None:
    from dispatchgate.policy.table import transition_edges

    for from_state, to_state in sorted(transition_edges(), key=lambda edge: (edge[0] or "", edge[1])):
        storage.execute(
            "INSERT INTO state_transition_rules (from_state, to_state) VALUES (?, ?) ON CONFLICT DO NOTHING",
            (from_state or NULL_STATE_SENTINEL, to_state),
        )


def _apply_change_request_columns(storage: StorageBackend) -> None:
    for column in ("change_request", "evidence_exception"):
        storage.execute(f"ALTER TABLE tickets ADD COLUMN {column} TEXT")
    # Picks up the edges of tools added since the first seed; existing rows are kept.
    _seed_transition_rules(storage)


MIGRATIONS: List[Migration] = [
    Migration("20260301_001_core_tables", "tickets, logs, evidence, outbox", _apply_core_tables),
    Migration("20260301_002_append_only_guards", "append-only and immutability triggers", _apply_guards),
    Migration("20260301_003_transition_rules_seed", "seed transition-legality rules", _seed_transition_rules),
    Migration(
        "20260315_004_change_requests",
        "change request and evidence exception columns, reseed transition rules",
        _apply_change_request_columns,
    ),
]


def init_db(storage: StorageBackend) -> Optional[str]:
    """
    Apply all pending forward-only migrations and return the latest applied id.
    """
    storage.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            migration_id TEXT PRIMARY KEY,
            description TEXT NOT NULL,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {row["migration_id"] for row in storage.fetchall("SELECT migration_id FROM schema_migrations")}
    latest: Optional[str] = max(applied) if applied else None
    for migration in MIGRATIONS:
        if migration.migration_id in applied:
            continue
        with storage.transaction():
            migration.apply(storage)
            storage.execute(
                "INSERT INTO schema_migrations (migration_id, description, applied_at) VALUES (?, ?, ?)",
                (migration.migration_id, migration.description, to_iso()),
            )
        latest = migration.migration_id
    return latest
