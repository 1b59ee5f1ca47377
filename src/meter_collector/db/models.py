"""SQL table definitions."""

SCHEMA_VERSION = 1

TABLES = [
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        id      INTEGER PRIMARY KEY CHECK (id = 1),
        version INTEGER NOT NULL
    )
    """,

    # ── Catalog ─────────────────────────────────────────────
    """
    CREATE TABLE IF NOT EXISTS meters (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        meter_id        INTEGER NOT NULL,
        element_id      INTEGER NOT NULL DEFAULT 0,
        tenant_id       INTEGER NOT NULL,
        name            TEXT NOT NULL DEFAULT '',
        host            TEXT NOT NULL,
        port            INTEGER NOT NULL DEFAULT 502,
        protocol        TEXT NOT NULL DEFAULT 'modbus',
        unit_id         INTEGER NOT NULL DEFAULT 1,
        active          INTEGER NOT NULL DEFAULT 1,
        last_read_at    TEXT,
        updated_at      TEXT NOT NULL,
        UNIQUE (meter_id, element_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_meters_active ON meters(active)",
    "CREATE INDEX IF NOT EXISTS idx_meters_device ON meters(host, port, unit_id)",

    """
    CREATE TABLE IF NOT EXISTS register_maps (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        host            TEXT NOT NULL,
        port            INTEGER NOT NULL DEFAULT 502,
        unit_id         INTEGER NOT NULL DEFAULT 1,
        address         INTEGER NOT NULL,
        data_point      TEXT NOT NULL,
        data_type       TEXT NOT NULL DEFAULT 'uint16',
        scale           REAL NOT NULL DEFAULT 1.0,
        unit            TEXT NOT NULL DEFAULT '',
        element_id      INTEGER,
        UNIQUE (host, port, unit_id, address, data_point)
    )
    """,

    # ── Readings ────────────────────────────────────────────
    # Natural key includes the element: one physical meter may expose
    # several elements reporting the same data point at the same time.
    """
    CREATE TABLE IF NOT EXISTS meter_readings (
        id                  INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id           INTEGER NOT NULL,
        meter_id            INTEGER NOT NULL,
        meter_element_id    INTEGER NOT NULL,
        data_point          TEXT NOT NULL,
        value               REAL,
        unit                TEXT NOT NULL DEFAULT '',
        quality             TEXT NOT NULL,
        source              TEXT NOT NULL,
        timestamp           TEXT NOT NULL,
        created_at          TEXT NOT NULL,
        uploaded_at         TEXT,
        UNIQUE (meter_id, meter_element_id, data_point, timestamp)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_readings_timestamp ON meter_readings(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_readings_upload ON meter_readings(uploaded_at)",

    # ── Telemetry ───────────────────────────────────────────
    """
    CREATE TABLE IF NOT EXISTS timeout_events (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        operation       TEXT NOT NULL,
        timeout_ms      INTEGER NOT NULL,
        meter_id        INTEGER NOT NULL,
        element_id      INTEGER NOT NULL,
        device_key      TEXT NOT NULL,
        detail          TEXT NOT NULL DEFAULT '',
        occurred_at     TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_timeouts_occurred ON timeout_events(occurred_at)",
    "CREATE INDEX IF NOT EXISTS idx_timeouts_operation ON timeout_events(operation)",

    """
    CREATE TABLE IF NOT EXISTS collection_cycles (
        id                  INTEGER PRIMARY KEY AUTOINCREMENT,
        cycle_id            INTEGER NOT NULL,
        started_at          TEXT NOT NULL,
        completed_at        TEXT,
        meters_processed    INTEGER NOT NULL DEFAULT 0,
        meters_failed       INTEGER NOT NULL DEFAULT 0,
        errors_json         TEXT NOT NULL DEFAULT '[]'
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_cycles_started ON collection_cycles(started_at)",

    # ── Sync ────────────────────────────────────────────────
    """
    CREATE TABLE IF NOT EXISTS sync_skips (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        skipped_at      TEXT NOT NULL,
        mode            TEXT NOT NULL,
        reason          TEXT NOT NULL,
        status_json     TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_runs (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        started_at      TEXT NOT NULL,
        completed_at    TEXT NOT NULL,
        mode            TEXT NOT NULL,
        status          TEXT NOT NULL,
        detail          TEXT NOT NULL DEFAULT ''
    )
    """,
]
