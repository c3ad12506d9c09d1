"""PostgreSQL connection pooling for the chat store and audit repository.

Provides:
- A threaded psycopg2 pool shared by every repository
- ``transaction()`` for atomic read-modify-write units
- Health checks for readiness probes
- Secrets Manager integration for credentials
"""
import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

import boto3
from psycopg2 import pool
from psycopg2.extras import RealDictCursor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection configuration.

    Credentials come from AWS Secrets Manager in production,
    or from environment variables in development.
    """
    host: str
    port: int = 5432
    database: str = "therapychat"
    username: str = ""
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    connect_timeout: int = 10
    ssl_mode: str = "require"

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Create config from environment variables.

        Environment variables:
            DB_HOST: Database host
            DB_PORT: Database port (default 5432)
            DB_NAME: Database name (default therapychat)
            DB_USER: Database username
            DB_PASSWORD: Database password
            DB_MIN_CONN: Minimum pool connections (default 2)
            DB_MAX_CONN: Maximum pool connections (default 10)
            DB_SSL_MODE: SSL mode (default require)
        """
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "therapychat"),
            username=os.getenv("DB_USER", ""),
            password=os.getenv("DB_PASSWORD", ""),
            min_connections=int(os.getenv("DB_MIN_CONN", "2")),
            max_connections=int(os.getenv("DB_MAX_CONN", "10")),
            ssl_mode=os.getenv("DB_SSL_MODE", "require"),
        )

    @classmethod
    def from_secrets_manager(cls, secret_arn: str, region: str = "us-east-1") -> "DatabaseConfig":
        """Load credentials from an AWS Secrets Manager secret."""
        try:
            client = boto3.client("secretsmanager", region_name=region)
            response = client.get_secret_value(SecretId=secret_arn)
            secret = json.loads(response["SecretString"])
        except Exception as e:
            logger.error(
                "SECRETS_MANAGER_LOAD_FAILED",
                extra={"error": str(e), "secret_arn": secret_arn}
            )
            raise

        return cls(
            host=secret.get("host", os.getenv("DB_HOST", "localhost")),
            port=int(secret.get("port", os.getenv("DB_PORT", "5432"))),
            database=secret.get("dbname", os.getenv("DB_NAME", "therapychat")),
            username=secret.get("username", ""),
            password=secret.get("password", ""),
        )


class ConnectionManager:
    """Hands out pooled connections with dict-like rows."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._pool = None
        self._initialized = False

        logger.info(
            "CONNECTION_MANAGER_CREATED",
            extra={
                "host": config.host,
                "database": config.database,
                "min_connections": config.min_connections,
                "max_connections": config.max_connections,
            }
        )

    def initialize(self) -> None:
        """Create the pool. Call during application startup."""
        if self._initialized:
            return

        try:
            self._pool = pool.ThreadedConnectionPool(
                minconn=self.config.min_connections,
                maxconn=self.config.max_connections,
                host=self.config.host,
                port=self.config.port,
                database=self.config.database,
                user=self.config.username,
                password=self.config.password,
                connect_timeout=self.config.connect_timeout,
                sslmode=self.config.ssl_mode,
                cursor_factory=RealDictCursor,
            )
        except Exception as e:
            logger.error(
                "CONNECTION_POOL_INIT_FAILED",
                extra={"error": str(e)}
            )
            raise

        self._initialized = True
        logger.info(
            "CONNECTION_POOL_INITIALIZED",
            extra={"host": self.config.host, "database": self.config.database}
        )

    @contextmanager
    def get_connection(self) -> Iterator[Any]:
        """Borrow a connection from the pool.

        Usage:
            with manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        """
        if not self._initialized:
            self.initialize()

        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        """Yield a cursor inside one transaction.

        Commits when the block exits normally and rolls back on any
        exception, which is re-raised to the caller.
        """
        with self.get_connection() as conn:
            try:
                with conn.cursor() as cur:
                    yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def health_check(self) -> Dict[str, Any]:
        if not self._initialized:
            return {"status": "not_initialized", "healthy": False}

        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
        except Exception as e:
            logger.error(
                "DATABASE_HEALTH_CHECK_FAILED",
                extra={"error": str(e)}
            )
            return {"status": "error", "healthy": False, "error": str(e)}

        return {
            "status": "connected",
            "healthy": True,
            "host": self.config.host,
            "database": self.config.database,
        }

    def close(self) -> None:
        """Close all pooled connections. Call during shutdown."""
        if self._pool is not None:
            self._pool.closeall()
            logger.info("CONNECTION_POOL_CLOSED")

        self._initialized = False


# Global connection manager instance
_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Get or create the process-wide connection manager."""
    global _connection_manager

    if _connection_manager is None:
        _connection_manager = ConnectionManager(DatabaseConfig.from_env())

    return _connection_manager
