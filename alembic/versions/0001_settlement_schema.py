"""settlement schema

Revision ID: 0001_settlement_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0001_settlement_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
    op.execute("CREATE SCHEMA IF NOT EXISTS market;")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS market.users (
            id uuid DEFAULT gen_random_uuid() PRIMARY KEY,
            email text,
            phone text,
            subaccount_code text,
            recipient_code text,
            is_system boolean DEFAULT false NOT NULL,
            balance_cents bigint DEFAULT 0 NOT NULL,
            pending_orders_count integer DEFAULT 0 NOT NULL,
            order_count integer DEFAULT 0 NOT NULL,
            sales_count integer DEFAULT 0 NOT NULL,
            total_sales_cents bigint DEFAULT 0 NOT NULL,
            created_at timestamp with time zone DEFAULT now() NOT NULL
        );
        """
    )

    # platform and gateway clearing accounts
    op.execute(
        """
        INSERT INTO market.users (id, email, is_system)
        VALUES
          ('00000000-0000-0000-0000-000000000001', 'platform@marketsettle.local', true),
          ('00000000-0000-0000-0000-000000000002', 'clearing@marketsettle.local', true)
        ON CONFLICT (id) DO NOTHING;
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS market.listings (
            product_ref text PRIMARY KEY,
            seller_id uuid REFERENCES market.users(id),
            inventory integer DEFAULT 0 NOT NULL CHECK (inventory >= 0),
            orders_count integer DEFAULT 0 NOT NULL,
            is_sold boolean DEFAULT false NOT NULL
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS market.orders (
            id uuid DEFAULT gen_random_uuid() PRIMARY KEY,
            customer_id uuid NOT NULL REFERENCES market.users(id),
            total_amount_cents bigint NOT NULL CHECK (total_amount_cents >= 0),
            status text DEFAULT 'pending' NOT NULL
              CHECK (status IN ('pending','paid','shipped','delivered','cancelled')),
            delivery_address jsonb,
            transaction_id uuid,
            version integer DEFAULT 0 NOT NULL,
            created_at timestamp with time zone DEFAULT now() NOT NULL,
            updated_at timestamp with time zone DEFAULT now() NOT NULL
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS market.order_items (
            id uuid DEFAULT gen_random_uuid() PRIMARY KEY,
            order_id uuid NOT NULL REFERENCES market.orders(id) ON DELETE CASCADE,
            seller_id uuid NOT NULL REFERENCES market.users(id),
            product_ref text NOT NULL,
            quantity integer NOT NULL CHECK (quantity > 0),
            unit_price_cents bigint NOT NULL CHECK (unit_price_cents >= 0),
            status text DEFAULT 'pending' NOT NULL
              CHECK (status IN ('pending','shipped','delivered','cancelled')),
            cancelled boolean DEFAULT false NOT NULL,
            position integer DEFAULT 0 NOT NULL
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS order_items_order_idx ON market.order_items (order_id);")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS market.transactions (
            id uuid PRIMARY KEY,
            order_id uuid NOT NULL REFERENCES market.orders(id),
            buyer_id uuid NOT NULL REFERENCES market.users(id),
            gateway text NOT NULL CHECK (gateway IN ('split','push')),
            gateway_reference text NOT NULL UNIQUE,
            total_amount_cents bigint NOT NULL,
            delivery_fee_cents bigint DEFAULT 0 NOT NULL,
            gateway_fee_cents bigint DEFAULT 0 NOT NULL,
            net_received_cents bigint DEFAULT 0 NOT NULL,
            status text DEFAULT 'pending' NOT NULL
              CHECK (status IN ('pending','gateway_initiated','completed','failed','reversed')),
            payment_method text,
            paid_at timestamp with time zone,
            is_reversed boolean DEFAULT false NOT NULL,
            version integer DEFAULT 0 NOT NULL,
            created_at timestamp with time zone DEFAULT now() NOT NULL,
            updated_at timestamp with time zone DEFAULT now() NOT NULL
        );
        """
    )
    # one live settlement per order
    op.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS transactions_one_active_per_order
        ON market.transactions (order_id)
        WHERE status IN ('pending','gateway_initiated','completed');
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS market.transaction_items (
            transaction_id uuid NOT NULL REFERENCES market.transactions(id) ON DELETE CASCADE,
            item_id uuid NOT NULL REFERENCES market.order_items(id),
            position integer DEFAULT 0 NOT NULL,
            seller_id uuid NOT NULL REFERENCES market.users(id),
            item_amount_cents bigint NOT NULL,
            platform_commission_cents bigint NOT NULL,
            seller_share_cents bigint NOT NULL,
            gateway_fee_cents bigint DEFAULT 0 NOT NULL,
            transfer_fee_cents bigint DEFAULT 0 NOT NULL,
            net_commission_cents bigint DEFAULT 0 NOT NULL,
            owed_amount_cents bigint DEFAULT 0 NOT NULL,
            payout_status text DEFAULT 'manual_pending' NOT NULL
              CHECK (payout_status IN ('manual_pending','pending','transferred','failed')),
            payout_reference text,
            refund_status text DEFAULT 'none' NOT NULL
              CHECK (refund_status IN ('none','pending','returned','completed')),
            refunded_amount_cents bigint DEFAULT 0 NOT NULL,
            return_status text DEFAULT 'none' NOT NULL
              CHECK (return_status IN ('none','pending','confirmed','rejected')),
            PRIMARY KEY (transaction_id, item_id),
            CHECK (seller_share_cents + platform_commission_cents = item_amount_cents)
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS market.balance_entries (
            id bigserial PRIMARY KEY,
            user_id uuid NOT NULL REFERENCES market.users(id),
            amount_cents bigint NOT NULL,
            kind text NOT NULL,
            event_id uuid NOT NULL,
            method text,
            status text DEFAULT 'completed' NOT NULL,
            order_id uuid,
            item_id uuid,
            reference text,
            created_at timestamp with time zone DEFAULT now() NOT NULL
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS balance_entries_user_idx ON market.balance_entries (user_id, id);")
    op.execute("CREATE INDEX IF NOT EXISTS balance_entries_event_idx ON market.balance_entries (event_id);")

    # history is append-only
    op.execute(
        """
        CREATE OR REPLACE FUNCTION market.reject_balance_entry_mutation() RETURNS trigger
        LANGUAGE plpgsql AS $$
        BEGIN
            RAISE EXCEPTION 'balance_entries is append-only';
        END;
        $$;
        """
    )
    op.execute(
        """
        DROP TRIGGER IF EXISTS balance_entries_append_only ON market.balance_entries;
        CREATE TRIGGER balance_entries_append_only
        BEFORE UPDATE OR DELETE ON market.balance_entries
        FOR EACH ROW EXECUTE FUNCTION market.reject_balance_entry_mutation();
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS market.webhook_events (
            id bigserial PRIMARY KEY,
            gateway text NOT NULL,
            path text NOT NULL,
            request_id text,
            headers jsonb,
            body jsonb,
            signature_valid boolean,
            signature_error text,
            reference text,
            event_kind text,
            outcome text,
            created_at timestamp with time zone DEFAULT now() NOT NULL
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS webhook_events_reference_idx ON market.webhook_events (reference);")


def downgrade() -> None:
    op.execute("DROP SCHEMA IF EXISTS market CASCADE;")
