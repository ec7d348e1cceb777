from contextlib import contextmanager
from datetime import date
from typing import List, Optional
import logging

import psycopg2
from psycopg2 import errors
from psycopg2.extras import DictCursor, Json

from interview_slots import config
from .error_utils import PersistenceError, SlotUnavailable
from .models import (AvailabilityRules, Booking, BookingStatus, DayAvailabilityRule, EntryType, LedgerEntry,
                     PaymentMethod)
from .booking_utils import parse_time
from .period import Period

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
logger = logging.getLogger(__name__)

BOOKING_COLUMNS = """id::text AS id, requester_id, provider_id, booking_date, start_time, end_time,
                     gross_amount, platform_fee, provider_payout, payment_method, external_payment_reference,
                     status, cancel_reason, created_at, updated_at"""

LEDGER_COLUMNS = """id::text AS id, account_id, entry_type, amount, reason,
                    related_booking_id::text AS related_booking_id, created_at"""


def _row_to_booking(row) -> Booking:
    return Booking(
        id=row['id'],
        requester_id=row['requester_id'],
        provider_id=row['provider_id'],
        date=row['booking_date'],
        start_time=row['start_time'],
        end_time=row['end_time'],
        gross_amount=row['gross_amount'],
        platform_fee=row['platform_fee'],
        provider_payout=row['provider_payout'],
        payment_method=PaymentMethod(row['payment_method']),
        external_payment_reference=row['external_payment_reference'],
        status=BookingStatus(row['status']),
        cancel_reason=row['cancel_reason'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


def _row_to_entry(row) -> LedgerEntry:
    return LedgerEntry(
        id=row['id'],
        account_id=row['account_id'],
        type=EntryType(row['entry_type']),
        amount=row['amount'],
        reason=row['reason'],
        related_booking_id=row['related_booking_id'],
        created_at=row['created_at'],
    )


def _row_to_rules(row) -> AvailabilityRules:
    day_rules = [
        DayAvailabilityRule(
            weekday=rule['day'],
            enabled=rule['enabled'],
            start_time=parse_time(rule['startTime']) if rule.get('startTime') else None,
            end_time=parse_time(rule['endTime']) if rule.get('endTime') else None,
            buffer_minutes=rule['bufferTime'],
        )
        for rule in row['day_rules']
    ]
    excluded = {
        date.fromisoformat(day): [Period(parse_time(w['startTime']), parse_time(w['endTime'])) for w in windows]
        for day, windows in (row['excluded_windows'] or {}).items()
    }
    return AvailabilityRules(
        provider_id=row['provider_id'],
        day_rules=day_rules,
        blocked_dates=set(row['blocked_dates'] or []),
        excluded_windows=excluded,
        updated_at=row['updated_at'],
    )


class DatabaseTransaction:
    """
    Query helpers bound to one open cursor. Everything done through one instance commits or rolls back together.
    """

    def __init__(self, cursor):
        self._cursor = cursor

    def _execute(self, query, params=None):
        logger.info("Executing query: %s", " ".join(query.split())[:200])
        self._cursor.execute(query, params)

    def lock(self, key: str):
        # Held until this transaction commits or rolls back
        logger.info("Acquiring advisory lock: %s", key)
        self._cursor.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (key,))

    def fetch_rules(self, provider_id: str) -> Optional[AvailabilityRules]:
        query = """SELECT provider_id, day_rules, blocked_dates, excluded_windows, updated_at
                   FROM availability_rules WHERE provider_id = %s"""
        self._execute(query, (provider_id,))
        row = self._cursor.fetchone()
        return _row_to_rules(row) if row else None

    def save_rules(self, rules: AvailabilityRules):
        # Full replacement of the provider's rule set, one row per provider
        query = """INSERT INTO availability_rules (provider_id, day_rules, blocked_dates, excluded_windows, updated_at)
                   VALUES (%s, %s, %s, %s, %s)
                   ON CONFLICT (provider_id) DO UPDATE
                   SET day_rules = EXCLUDED.day_rules,
                       blocked_dates = EXCLUDED.blocked_dates,
                       excluded_windows = EXCLUDED.excluded_windows,
                       updated_at = EXCLUDED.updated_at"""
        excluded = {day.isoformat(): [window.to_dict() for window in windows]
                    for day, windows in rules.excluded_windows.items()}
        self._execute(query, (rules.provider_id,
                              Json([rule.to_dict() for rule in rules.day_rules]),
                              sorted(rules.blocked_dates),
                              Json(excluded),
                              rules.updated_at))

    def fetch_active_bookings(self, provider_id: str, day: date) -> List[Booking]:
        query = f"""SELECT {BOOKING_COLUMNS} FROM bookings
                    WHERE provider_id = %s AND booking_date = %s AND status <> 'cancelled'
                    ORDER BY start_time"""
        self._execute(query, (provider_id, day))
        return [_row_to_booking(row) for row in self._cursor.fetchall()]

    def fetch_booking(self, booking_id: str, for_update: bool = False) -> Optional[Booking]:
        query = f"SELECT {BOOKING_COLUMNS} FROM bookings WHERE id::text = %s"
        if for_update:
            query += " FOR UPDATE"
        self._execute(query, (booking_id,))
        row = self._cursor.fetchone()
        return _row_to_booking(row) if row else None

    def fetch_bookings(self, requester_id: str = None, provider_id: str = None,
                       status: BookingStatus = None) -> List[Booking]:
        clauses, params = [], []
        if requester_id is not None:
            clauses.append("requester_id = %s")
            params.append(requester_id)
        if provider_id is not None:
            clauses.append("provider_id = %s")
            params.append(provider_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"SELECT {BOOKING_COLUMNS} FROM bookings {where} ORDER BY booking_date, start_time, created_at"
        self._execute(query, tuple(params))
        return [_row_to_booking(row) for row in self._cursor.fetchall()]

    def insert_booking(self, booking: Booking):
        query = """INSERT INTO bookings (id, requester_id, provider_id, booking_date, start_time, end_time,
                                         gross_amount, platform_fee, provider_payout, payment_method,
                                         external_payment_reference, status, cancel_reason, created_at, updated_at)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)"""
        try:
            self._execute(query, (booking.id, booking.requester_id, booking.provider_id, booking.date,
                                  booking.start_time, booking.end_time, booking.gross_amount, booking.platform_fee,
                                  booking.provider_payout, booking.payment_method.value,
                                  booking.external_payment_reference, booking.status.value, booking.cancel_reason,
                                  booking.created_at, booking.updated_at))
        except errors.UniqueViolation as e:
            # The partial unique index on (provider_id, booking_date, start_time) caught a concurrent writer
            logger.error(f"Booking insertion lost the slot race: {e.args}")
            raise SlotUnavailable("This slot was just booked by someone else. Please pick another slot.")

    def update_booking(self, booking: Booking):
        # Only lifecycle fields change after creation, scheduling and amounts are fixed
        query = """UPDATE bookings
                   SET status = %s, external_payment_reference = %s, cancel_reason = %s, updated_at = %s
                   WHERE id::text = %s"""
        self._execute(query, (booking.status.value, booking.external_payment_reference, booking.cancel_reason,
                              booking.updated_at, booking.id))

    def insert_ledger_entry(self, entry: LedgerEntry):
        query = """INSERT INTO ledger_entries (id, account_id, entry_type, amount, reason, related_booking_id, created_at)
                   VALUES (%s, %s, %s, %s, %s, %s, %s)"""
        self._execute(query, (entry.id, entry.account_id, entry.type.value, entry.amount, entry.reason,
                              entry.related_booking_id, entry.created_at))

    def fetch_ledger_entries(self, account_id: str) -> List[LedgerEntry]:
        query = f"""SELECT {LEDGER_COLUMNS} FROM ledger_entries
                    WHERE account_id = %s ORDER BY created_at, id"""
        self._execute(query, (account_id,))
        return [_row_to_entry(row) for row in self._cursor.fetchall()]


class DatabasePersistence:
    def __init__(self, dsn: str = None, setup_schema: bool = True):
        self._dsn = dsn or config.DATABASE_URL
        # Request handlers skip the schema checks, `flask init-db` runs them once per deployment
        if setup_schema:
            self._setup_schema()

    @contextmanager
    def _database_connect(self):
        """
        Internal function to manage the Postgres database connections.
        Must include environment variable for database url path when deploying to production.
        """
        connection = psycopg2.connect(self._dsn)
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    @contextmanager
    def transaction(self, lock_key: str = None):
        """
        Opens one database transaction and yields a DatabaseTransaction bound to it.

        With lock_key set, a transaction scoped advisory lock on that key is taken first so concurrent callers using
        the same key run one after another. The lock is released on commit or rollback.

        Raises PersistenceError for connection and database failures. Typed booking errors raised inside the block
        roll the transaction back and propagate unchanged.
        """
        try:
            with self._database_connect() as conn:
                with conn.cursor(cursor_factory=DictCursor) as cursor:
                    # Must set time zone here for each connection
                    cursor.execute("SET TIME ZONE 'UTC';")
                    tx = DatabaseTransaction(cursor)
                    if lock_key:
                        tx.lock(lock_key)
                    yield tx
        except psycopg2.DatabaseError as e:
            logger.error(f"Database operation failed: {e.args}")
            raise PersistenceError("The booking store is unavailable. Please retry shortly.") from e

    # Read-only conveniences, each runs in its own short transaction

    def get_rules(self, provider_id: str) -> Optional[AvailabilityRules]:
        with self.transaction() as tx:
            return tx.fetch_rules(provider_id)

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self.transaction() as tx:
            return tx.fetch_booking(booking_id)

    def list_ledger_entries(self, account_id: str) -> List[LedgerEntry]:
        with self.transaction() as tx:
            return tx.fetch_ledger_entries(account_id)

    def _setup_schema(self):
        """
        Internal function to set-up the database schema if the tables do not exist. Primarily used when being deployed in production.
        """
        try:
            with self._database_connect() as conn:
                with conn.cursor() as cursor:
                    if not self._table_exists(cursor, 'availability_rules'):
                        logger.info("Setting up the schema.")
                        cursor.execute("""
                            CREATE TABLE availability_rules (
                            provider_id text PRIMARY KEY,
                            day_rules jsonb NOT NULL,
                            blocked_dates date[] NOT NULL DEFAULT '{}',
                            excluded_windows jsonb NOT NULL DEFAULT '{}',
                            updated_at timestamp with time zone DEFAULT CURRENT_TIMESTAMP NOT NULL);
                        """)
                    if not self._table_exists(cursor, 'bookings'):
                        cursor.execute("""
                            CREATE TABLE bookings (
                            id uuid PRIMARY KEY NOT NULL,
                            requester_id text NOT NULL,
                            provider_id text NOT NULL,
                            booking_date date NOT NULL,
                            start_time time NOT NULL,
                            end_time time NOT NULL,
                            gross_amount numeric(12, 2) NOT NULL CHECK (gross_amount > 0),
                            platform_fee numeric(12, 2) NOT NULL CHECK (platform_fee >= 0),
                            provider_payout numeric(12, 2) NOT NULL CHECK (provider_payout >= 0),
                            payment_method text NOT NULL CHECK (payment_method IN ('wallet', 'external')),
                            external_payment_reference text,
                            status text NOT NULL CHECK (status IN ('pending', 'confirmed', 'completed', 'cancelled')),
                            cancel_reason text,
                            created_at timestamp with time zone NOT NULL,
                            updated_at timestamp with time zone NOT NULL,
                            CHECK (start_time < end_time),
                            CHECK (platform_fee + provider_payout = gross_amount),
                            CHECK ((status = 'cancelled') = (cancel_reason IS NOT NULL)),
                            CHECK (updated_at >= created_at));
                        """)
                        # Backstop against double booking: one live booking per provider slot start
                        cursor.execute("""
                            CREATE UNIQUE INDEX bookings_active_slot_idx
                            ON bookings (provider_id, booking_date, start_time)
                            WHERE status <> 'cancelled';
                        """)
                        cursor.execute("CREATE INDEX bookings_requester_idx ON bookings (requester_id);")
                    if not self._table_exists(cursor, 'ledger_entries'):
                        cursor.execute("""
                            CREATE TABLE ledger_entries (
                            id uuid PRIMARY KEY NOT NULL,
                            account_id text NOT NULL,
                            entry_type text NOT NULL CHECK (entry_type IN ('credit', 'debit')),
                            amount numeric(12, 2) NOT NULL CHECK (amount > 0),
                            reason text NOT NULL,
                            related_booking_id uuid REFERENCES bookings (id),
                            created_at timestamp with time zone NOT NULL);
                        """)
                        cursor.execute("CREATE INDEX ledger_entries_account_idx ON ledger_entries (account_id, created_at);")
                    self._setup_append_only_triggers(cursor)
        except psycopg2.DatabaseError as e:
            logger.error(f"Schema setup failed: {e.args}")
            raise PersistenceError("The booking store is unavailable. Please retry shortly.") from e

    @staticmethod
    def _table_exists(cursor, table_name: str) -> bool:
        cursor.execute("""
            SELECT COUNT(*)
            FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = %s;
        """, (table_name,))
        return cursor.fetchone()[0] != 0

    def _setup_append_only_triggers(self, cursor):
        """
        Ledger entries can never be updated or deleted and bookings can never be deleted, keeping full audit history.
        """
        check_function_query = """
                                SELECT EXISTS (
                                SELECT 1
                                FROM pg_proc
                                JOIN pg_namespace ON pg_proc.pronamespace = pg_namespace.oid
                                WHERE proname = %s AND nspname = %s);
                                """
        function_name = 'reject_history_rewrite'
        schema_name = 'public'
        # Check if the function exists within the database
        cursor.execute(check_function_query, (function_name, schema_name))
        function_exists = cursor.fetchone()[0]
        if not function_exists:
            create_function_query = """
            CREATE FUNCTION reject_history_rewrite()
            RETURNS TRIGGER AS $$
            BEGIN
                RAISE EXCEPTION '% on % is not allowed', TG_OP, TG_TABLE_NAME;
            END;
            $$ LANGUAGE plpgsql;"""
            ledger_trigger_query = """
            CREATE TRIGGER ledger_entries_append_only
            BEFORE UPDATE OR DELETE ON ledger_entries
            FOR EACH ROW
            EXECUTE FUNCTION reject_history_rewrite();"""
            booking_trigger_query = """
            CREATE TRIGGER bookings_never_deleted
            BEFORE DELETE ON bookings
            FOR EACH ROW
            EXECUTE FUNCTION reject_history_rewrite();"""
            cursor.execute(create_function_query)
            cursor.execute(ledger_trigger_query)
            cursor.execute(booking_trigger_query)
