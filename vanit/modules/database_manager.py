"""
Database Manager Module - VanIt Boarding & Emergency Service
Author: VanIt Transport Team
Date: October 2026

This module handles all database operations for the boarding and emergency
core. It manages SQLite connections, schema creation and transactions for
boarding sessions, boarding events, emergency alerts and the alert
transition log.

Features:
- Thread-local SQLite connection management
- WAL journaling with a bounded busy timeout
- Idempotent schema creation
- Partial unique indexes backing the one-open-session and
  one-valid-boarding invariants
- Immediate-mode transactions for check-then-act sequences
- Error logging with propagation to the caller
"""

import sqlite3
import logging
import threading
import os
from contextlib import contextmanager


class DatabaseManager:
    """
    Storage collaborator for the boarding and emergency core.
    Every failure is logged and re-raised; callers decide what a storage
    outage means for their request.
    """

    SCHEMA = [
        """
        CREATE TABLE IF NOT EXISTS boarding_sessions (
            session_id VARCHAR(64) PRIMARY KEY,
            token VARCHAR(128) UNIQUE NOT NULL,
            route_id VARCHAR(100) NOT NULL,
            captain_id VARCHAR(100) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'open'
                CHECK (status IN ('open', 'expired', 'ended')),
            onboarded_count INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMP NOT NULL,
            expires_at TIMESTAMP NOT NULL,
            ended_at TIMESTAMP,
            end_reason VARCHAR(20),
            archived_at TIMESTAMP
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS boarding_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id VARCHAR(64) NOT NULL,
            student_id VARCHAR(100) NOT NULL,
            route_id VARCHAR(100) NOT NULL,
            captain_id VARCHAR(100) NOT NULL,
            scanned_at TIMESTAMP NOT NULL,
            is_valid BOOLEAN NOT NULL,
            rejection_reason VARCHAR(50),
            latitude REAL,
            longitude REAL,
            scan_payload TEXT,
            FOREIGN KEY (session_id) REFERENCES boarding_sessions(session_id)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS emergency_alerts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            reporter_id VARCHAR(100) NOT NULL,
            reporter_role VARCHAR(20) NOT NULL
                CHECK (reporter_role IN ('student', 'captain')),
            reporter_name VARCHAR(100),
            phone VARCHAR(20),
            route_id VARCHAR(100) NOT NULL,
            stop_name VARCHAR(100),
            emergency_type VARCHAR(50) NOT NULL DEFAULT 'general',
            priority VARCHAR(20) NOT NULL
                CHECK (priority IN ('low', 'medium', 'high', 'critical')),
            message TEXT NOT NULL DEFAULT '',
            latitude REAL,
            longitude REAL,
            status VARCHAR(20) NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'acknowledged', 'resolved')),
            created_at TIMESTAMP NOT NULL,
            acknowledged_at TIMESTAMP,
            acknowledged_by VARCHAR(100),
            acknowledgment_notes TEXT,
            resolved_at TIMESTAMP,
            resolved_by VARCHAR(100),
            resolution_notes TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS alert_transitions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            alert_id INTEGER NOT NULL,
            from_status VARCHAR(20),
            to_status VARCHAR(20) NOT NULL,
            actor VARCHAR(100),
            notes TEXT,
            transitioned_at TIMESTAMP NOT NULL,
            FOREIGN KEY (alert_id) REFERENCES emergency_alerts(id)
        )
        """
    ]

    INDEXES = [
        # At most one open session per (route, captain)
        """CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_one_open
           ON boarding_sessions(route_id, captain_id) WHERE status = 'open'""",
        "CREATE INDEX IF NOT EXISTS idx_sessions_route ON boarding_sessions(route_id, status)",
        "CREATE INDEX IF NOT EXISTS idx_sessions_captain ON boarding_sessions(captain_id, status)",
        # A student boards at most once per session; rejected attempts are all kept
        """CREATE UNIQUE INDEX IF NOT EXISTS idx_events_one_valid
           ON boarding_events(session_id, student_id) WHERE is_valid = 1""",
        "CREATE INDEX IF NOT EXISTS idx_events_session ON boarding_events(session_id)",
        "CREATE INDEX IF NOT EXISTS idx_events_student ON boarding_events(student_id)",
        "CREATE INDEX IF NOT EXISTS idx_events_scanned_at ON boarding_events(scanned_at)",
        "CREATE INDEX IF NOT EXISTS idx_alerts_status ON emergency_alerts(status)",
        "CREATE INDEX IF NOT EXISTS idx_alerts_reporter ON emergency_alerts(reporter_role, reporter_id)",
        "CREATE INDEX IF NOT EXISTS idx_transitions_alert ON alert_transitions(alert_id)"
    ]

    def __init__(self, db_path, timeout=30.0, journal_mode='WAL', synchronous='NORMAL',
                 check_same_thread=False):
        """
        Initialize the database manager with the specified database path.

        Args:
            db_path (str): Path to the SQLite database file
            timeout (float): Seconds to wait on a locked database
            journal_mode (str): SQLite journal mode
            synchronous (str): SQLite synchronous setting
            check_same_thread (bool): Passed through to sqlite3.connect
        """
        self.db_path = str(db_path)
        self.timeout = timeout
        self.journal_mode = journal_mode
        self.synchronous = synchronous
        self.check_same_thread = check_same_thread
        self.logger = logging.getLogger(__name__)
        # Each thread owns one connection, released when the thread exits
        self._local = threading.local()

        # Ensure database directory exists
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        self.initialize_database()

    def _connect(self):
        connection = sqlite3.connect(
            self.db_path,
            check_same_thread=self.check_same_thread,
            timeout=self.timeout
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        connection.execute(f"PRAGMA synchronous = {self.synchronous}")
        return connection

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections with automatic cleanup.
        Provides thread-local connections for thread safety.

        Yields:
            sqlite3.Connection: Database connection object
        """
        if not hasattr(self._local, 'connection'):
            self._local.connection = self._connect()

        try:
            yield self._local.connection
        except sqlite3.IntegrityError:
            self._local.connection.rollback()
            raise
        except Exception as e:
            self._local.connection.rollback()
            self.logger.error(f"Database operation failed: {str(e)}")
            raise

    def initialize_database(self):
        """
        Create all necessary tables and indexes.
        This method is idempotent and can be called multiple times safely.
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                # Journal mode is persistent for the database file
                cursor.execute(f"PRAGMA journal_mode = {self.journal_mode}")

                for statement in self.SCHEMA:
                    cursor.execute(statement)

                for statement in self.INDEXES:
                    cursor.execute(statement)

                conn.commit()
                self.logger.info(f"Database initialized at {self.db_path}")

        except Exception as e:
            self.logger.error(f"Failed to initialize database: {str(e)}")
            raise

    def execute_query(self, query, params=None, fetch_all=True):
        """
        Execute a SELECT query and return results.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters
            fetch_all (bool): Whether to fetch all results or just one

        Returns:
            list or dict: Query results
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(query, params or ())

                if fetch_all:
                    return [dict(row) for row in cursor.fetchall()]

                result = cursor.fetchone()
                return dict(result) if result else None

        except Exception as e:
            self.logger.error(f"Query execution failed: {str(e)}")
            raise

    def execute_update(self, query, params=None):
        """
        Execute an INSERT, UPDATE, or DELETE query in its own transaction.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters

        Returns:
            int: Number of affected rows or last inserted row ID
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(query, params or ())
                conn.commit()

                # Return last inserted row ID for INSERT statements
                if query.strip().upper().startswith('INSERT'):
                    return cursor.lastrowid
                return cursor.rowcount

        except Exception as e:
            self.logger.error(f"Update execution failed: {str(e)}")
            raise

    @contextmanager
    def transaction(self):
        """
        Context manager for write transactions with automatic rollback on error.

        The write lock is taken up front (BEGIN IMMEDIATE) so a read followed
        by a write inside the block cannot interleave with another writer.

        Yields:
            sqlite3.Connection: Database connection within transaction
        """
        with self.get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.commit()
            except sqlite3.IntegrityError as e:
                conn.rollback()
                self.logger.warning(f"Transaction rolled back on constraint: {str(e)}")
                raise
            except Exception as e:
                conn.rollback()
                self.logger.error(f"Transaction rolled back: {str(e)}")
                raise

    def close_connection(self):
        """Close the calling thread's connection, if it opened one."""
        connection = getattr(self._local, 'connection', None)
        if connection is None:
            return

        del self._local.connection
        try:
            connection.close()
        except sqlite3.Error as e:
            self.logger.error(f"Error closing connection: {str(e)}")
