"""
Connection scoping for the SQLAlchemy target store.

Statements run either on a caller-managed AsyncConnection (the caller owns
the transaction) or on a connection checked out from an AsyncEngine for the
duration of one backend call.
"""

from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from consolidator.exceptions import BackendUnavailableError


@asynccontextmanager
async def connection_scope(
    conn: AsyncConnection | AsyncEngine,
    backend_name: str,
    *,
    write: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection for one backend call.

    Args:
        conn: Engine or caller-managed connection.
        backend_name: Backend name reported when the database is unreachable.
        write: With an engine, run in a transaction committed on exit
            (``begin``); otherwise use a plain connection (``connect``).
            Ignored for a caller-managed connection.

    Yields:
        AsyncConnection ready for execute() calls.

    Raises:
        BackendUnavailableError: If no connection could be opened.
    """
    if not isinstance(conn, AsyncEngine):
        yield conn
        return

    async with AsyncExitStack() as stack:
        try:
            connection = await stack.enter_async_context(
                conn.begin() if write else conn.connect()
            )
        except DBAPIError as e:
            raise BackendUnavailableError(backend_name, str(e.orig or e)) from e
        yield connection
