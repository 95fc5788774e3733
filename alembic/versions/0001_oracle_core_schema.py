"""oracle + core schemas

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.execute("CREATE SCHEMA IF NOT EXISTS oracle")
    op.execute("CREATE SCHEMA IF NOT EXISTS core")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oracle.fixtures (
          id TEXT PRIMARY KEY,
          name TEXT,
          home TEXT,
          away TEXT,
          league TEXT,
          kickoff TIMESTAMPTZ,
          status VARCHAR(16),
          state_code VARCHAR(32),
          minute INTEGER,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_fixtures_kickoff ON oracle.fixtures(kickoff)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_fixtures_status ON oracle.fixtures(status)")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oracle.fixture_results (
          fixture_id TEXT PRIMARY KEY REFERENCES oracle.fixtures(id),
          home_ft INTEGER NOT NULL CHECK (home_ft >= 0),
          away_ft INTEGER NOT NULL CHECK (away_ft >= 0),
          home_ht INTEGER CHECK (home_ht >= 0),
          away_ht INTEGER CHECK (away_ht >= 0),
          home_et INTEGER CHECK (home_et >= 0),
          away_et INTEGER CHECK (away_et >= 0),
          home_pen INTEGER CHECK (home_pen >= 0),
          away_pen INTEGER CHECK (away_pen >= 0),
          outcomes JSONB NOT NULL,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          superseded_at TIMESTAMPTZ
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oracle.match_results (
          fixture_id TEXT NOT NULL REFERENCES oracle.fixture_results(fixture_id),
          market VARCHAR(16) NOT NULL,
          outcome_code VARCHAR(32) NOT NULL,
          outcome_bytes BYTEA,
          available BOOLEAN NOT NULL,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          PRIMARY KEY (fixture_id, market)
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oracle.result_supersedes (
          id BIGSERIAL PRIMARY KEY,
          fixture_id TEXT NOT NULL,
          old_raw JSONB NOT NULL,
          new_raw JSONB NOT NULL,
          old_outcomes JSONB NOT NULL,
          new_outcomes JSONB NOT NULL,
          reason TEXT NOT NULL,
          actor TEXT NOT NULL,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oracle.result_conflicts (
          id BIGSERIAL PRIMARY KEY,
          fixture_id TEXT NOT NULL,
          stored JSONB NOT NULL,
          incoming JSONB NOT NULL,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          resolved_at TIMESTAMPTZ
        )
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_result_conflicts_open ON oracle.result_conflicts(fixture_id) WHERE resolved_at IS NULL"
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oracle.pools (
          pool_id BIGINT PRIMARY KEY,
          creator VARCHAR(42),
          odds INTEGER,
          oracle_type VARCHAR(16),
          market_type SMALLINT,
          market_id TEXT,
          predicted_outcome BYTEA,
          predicted_outcome_text VARCHAR(32),
          creator_stake TEXT,
          total_creator_side_stake TEXT,
          total_bettor_stake TEXT,
          event_start TIMESTAMPTZ,
          event_end TIMESTAMPTZ,
          betting_end TIMESTAMPTZ,
          arbitration_deadline TIMESTAMPTZ,
          is_private BOOLEAN NOT NULL DEFAULT false,
          uses_bitr BOOLEAN NOT NULL DEFAULT false,
          status VARCHAR(24) NOT NULL DEFAULT 'open',
          is_settled BOOLEAN NOT NULL DEFAULT false,
          creator_side_won BOOLEAN,
          result BYTEA,
          result_text VARCHAR(32),
          result_timestamp TIMESTAMPTZ,
          settlement_tx_hash VARCHAR(66),
          settle_attempts INTEGER NOT NULL DEFAULT 0,
          next_attempt_at TIMESTAMPTZ,
          last_error TEXT,
          refund_reason TEXT,
          refunded_at TIMESTAMPTZ,
          created_tx_hash VARCHAR(66),
          created_block BIGINT,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_pools_due ON oracle.pools(event_end) WHERE is_settled = false"
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oracle.bets (
          id BIGSERIAL PRIMARY KEY,
          pool_id BIGINT NOT NULL REFERENCES oracle.pools(pool_id) ON DELETE CASCADE,
          bettor VARCHAR(42) NOT NULL,
          amount TEXT NOT NULL,
          is_for_outcome BOOLEAN NOT NULL,
          tx_hash VARCHAR(66) NOT NULL,
          log_index INTEGER NOT NULL,
          block_number BIGINT NOT NULL,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          UNIQUE (tx_hash, log_index)
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_bets_pool ON oracle.bets(pool_id)")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oracle.oddyssey_cycles (
          cycle_id BIGINT PRIMARY KEY,
          cycle_end_epoch BIGINT NOT NULL,
          cycle_end_time TIMESTAMPTZ NOT NULL,
          matches_data JSONB NOT NULL,
          is_resolved BOOLEAN NOT NULL DEFAULT false,
          evaluation_completed BOOLEAN NOT NULL DEFAULT false,
          partial_resolution_requested BOOLEAN NOT NULL DEFAULT false,
          chain_resolved BOOLEAN NOT NULL DEFAULT false,
          halted BOOLEAN NOT NULL DEFAULT false,
          last_error TEXT,
          prize_pool TEXT,
          resolved_tx_hash VARCHAR(66),
          resolved_at TIMESTAMPTZ,
          created_tx_hash VARCHAR(66),
          created_block BIGINT,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oracle.cycle_matches_snapshot (
          cycle_id BIGINT NOT NULL REFERENCES oracle.oddyssey_cycles(cycle_id) ON DELETE CASCADE,
          position SMALLINT NOT NULL CHECK (position BETWEEN 0 AND 9),
          fixture_id TEXT NOT NULL,
          start_time TIMESTAMPTZ,
          odds_home INTEGER NOT NULL,
          odds_draw INTEGER NOT NULL,
          odds_away INTEGER NOT NULL,
          odds_over INTEGER NOT NULL,
          odds_under INTEGER NOT NULL,
          PRIMARY KEY (cycle_id, position)
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oracle.oddyssey_slips (
          slip_id BIGINT PRIMARY KEY,
          cycle_id BIGINT NOT NULL,
          player VARCHAR(42) NOT NULL,
          picks JSONB NOT NULL,
          placed_at TIMESTAMPTZ,
          tx_hash VARCHAR(66),
          log_index INTEGER,
          block_number BIGINT,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_oddyssey_slips_cycle ON oracle.oddyssey_slips(cycle_id)")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oracle.slip_evaluations (
          slip_id BIGINT PRIMARY KEY,
          cycle_id BIGINT NOT NULL,
          correct_count SMALLINT NOT NULL CHECK (correct_count BETWEEN 0 AND 10),
          final_score NUMERIC(78, 0) NOT NULL,
          eligible BOOLEAN NOT NULL,
          disqualified_overflow BOOLEAN NOT NULL DEFAULT false,
          void_picks SMALLINT NOT NULL DEFAULT 0,
          rank INTEGER,
          evaluated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_slip_evaluations_cycle ON oracle.slip_evaluations(cycle_id)")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oracle.cycle_winners (
          cycle_id BIGINT NOT NULL,
          position SMALLINT NOT NULL,
          slip_id BIGINT NOT NULL,
          player VARCHAR(42) NOT NULL,
          final_score NUMERIC(78, 0) NOT NULL,
          correct_count SMALLINT NOT NULL,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          PRIMARY KEY (cycle_id, position)
        )
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oracle.audit_log (
          id BIGSERIAL PRIMARY KEY,
          kind VARCHAR(48) NOT NULL,
          entity_type VARCHAR(24) NOT NULL,
          entity_id TEXT NOT NULL,
          expected JSONB,
          observed JSONB,
          message TEXT,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_audit_log_entity ON oracle.audit_log(entity_type, entity_id)")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oracle.chain_events (
          tx_hash VARCHAR(66) NOT NULL,
          log_index INTEGER NOT NULL,
          block_number BIGINT NOT NULL,
          block_hash VARCHAR(66) NOT NULL,
          contract VARCHAR(32) NOT NULL,
          event VARCHAR(48) NOT NULL,
          args JSONB NOT NULL,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          PRIMARY KEY (tx_hash, log_index)
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_chain_events_block ON oracle.chain_events(block_number)")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oracle.indexer_cursors (
          stream VARCHAR(32) PRIMARY KEY,
          last_block BIGINT NOT NULL,
          last_block_hash VARCHAR(66),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oracle.job_runs (
          id BIGSERIAL PRIMARY KEY,
          job_name VARCHAR(64) NOT NULL,
          status VARCHAR(16) NOT NULL,
          triggered_by VARCHAR(32),
          started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          finished_at TIMESTAMPTZ,
          error TEXT,
          meta JSONB
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_job_runs_job_started ON oracle.job_runs(job_name, started_at DESC)")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS core.users (
          address VARCHAR(42) PRIMARY KEY,
          first_seen_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          last_seen_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )


def downgrade():
    op.execute("DROP SCHEMA IF EXISTS core CASCADE")
    op.execute("DROP SCHEMA IF EXISTS oracle CASCADE")
