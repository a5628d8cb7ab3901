"""
Authorization gate for write operations.

A write to a source requires at least one row in ``authorizations``
matching (apikey, permission, source). The API key travels on the
operation context; a missing key fails closed with MissingIdentityError.
"""

from __future__ import annotations

import logging
from enum import Enum

from mortarbase.context import OperationContext
from mortarbase.errors import AuthorizationError, MissingIdentityError
from mortarbase.storage.transactions import TransactionManager

logger = logging.getLogger(__name__)


class Permission(Enum):
    """Permissions that can be granted on a source."""
    WRITE = "write"


def _permission_value(permission) -> str:
    return permission.value if isinstance(permission, Permission) else str(permission)


class AuthorizationGate:
    """Checks capability grants in the authorizations relation."""

    def __init__(self, txns: TransactionManager):
        self._txns = txns

    def check_authorized(self, ctx: OperationContext, permission, source: str) -> bool:
        """
        Return True iff the caller's API key holds ``permission`` on ``source``.

        Raises:
            MissingIdentityError: if the context carries no API key
        """
        if not ctx.apikey:
            raise MissingIdentityError("No apikey", source=source)

        with self._txns.connection(ctx) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM authorizations "
                "WHERE apikey = ? AND permission = ? AND source = ?",
                [ctx.apikey, _permission_value(permission), source],
            ).fetchone()
        return row is not None and row[0] > 0

    def require_authorized(self, ctx: OperationContext, permission, source: str) -> None:
        """Raise AuthorizationError unless the caller holds ``permission`` on ``source``."""
        if not self.check_authorized(ctx, permission, source):
            logger.warning(f"Denied {_permission_value(permission)} on source {source}")
            raise AuthorizationError(f"Cannot write to source: {source}", source=source)

    def grant(self, ctx: OperationContext, apikey: str, permission, source: str) -> None:
        """Grant ``permission`` on ``source`` to ``apikey`` (idempotent)."""
        perm = _permission_value(permission)

        def work(conn):
            conn.execute(
                "INSERT INTO authorizations (apikey, permission, source) "
                "SELECT ?, ?, ? WHERE NOT EXISTS ("
                "  SELECT 1 FROM authorizations "
                "  WHERE apikey = ? AND permission = ? AND source = ?)",
                [apikey, perm, source, apikey, perm, source],
            )

        self._txns.run_in_transaction(ctx, work)
        logger.info(f"Granted {perm} on {source}")

    def revoke(self, ctx: OperationContext, apikey: str, permission, source: str) -> None:
        """Remove every grant of ``permission`` on ``source`` from ``apikey``."""
        perm = _permission_value(permission)
        self._txns.run_in_transaction(
            ctx,
            lambda conn: conn.execute(
                "DELETE FROM authorizations WHERE apikey = ? AND permission = ? AND source = ?",
                [apikey, perm, source],
            ),
        )
        logger.info(f"Revoked {perm} on {source}")
