"""
Unit of Work

Runs a piece of work against one store transaction and either commits or
rolls back atomically. Callbacks registered through `on_commit` fire only
after the commit succeeded, so side effects such as audit events are never
emitted for rolled-back work.

Usage:
    async def work(tx):
        existing = await repo.find_by_order_reference(purpose, session=tx.session)
        ...
        await repo.insert(doc, session=tx.session)
        tx.on_commit(lambda: audit.emit(event))
        return doc

    created = await uow.run(work)
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List, Optional, TypeVar
import inspect
import logging

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

logger = logging.getLogger(__name__)

T = TypeVar("T")
CommitHook = Callable[[], Any]


class TransactionHandle:
    """Per-attempt view of an open transaction handed to the work function"""

    def __init__(self, session=None):
        self.session = session
        self._hooks: List[CommitHook] = []

    def on_commit(self, hook: CommitHook) -> None:
        self._hooks.append(hook)

    @property
    def hooks(self) -> List[CommitHook]:
        return list(self._hooks)


Work = Callable[[TransactionHandle], Awaitable[T]]


class AbstractUnitOfWork(ABC):
    """Transaction boundary independent of any store binding"""

    async def run(self, work: Work) -> Any:
        """
        Execute `work` in one transaction, then fire its commit hooks.

        Exceptions raised by `work` roll the transaction back and propagate;
        hooks registered by that attempt are discarded.
        """
        result, hooks = await self._execute(work)
        await self._fire_hooks(hooks)
        return result

    @abstractmethod
    async def _execute(self, work: Work):
        """Run `work` inside a transaction; return (result, hooks of the committed attempt)"""
        raise NotImplementedError

    async def _fire_hooks(self, hooks: List[CommitHook]) -> None:
        for hook in hooks:
            try:
                outcome = hook()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                # The data is committed; a failing hook cannot undo that
                logger.error(f"[TRANSACTION] Post-commit hook failed: {e}", exc_info=True)


class MongoUnitOfWork(AbstractUnitOfWork):
    """
    MongoDB implementation backed by a client session transaction.

    `with_transaction` retries the whole callback on TransientTransactionError
    (e.g. a write conflict with a concurrent writer) and retries the commit on
    UnknownTransactionCommitResult. Each attempt gets a fresh handle so only
    hooks of the attempt that actually committed survive.
    """

    def __init__(
        self,
        client: AsyncIOMotorClient,
        read_concern: Optional[ReadConcern] = None,
        write_concern: Optional[WriteConcern] = None
    ):
        self.client = client
        self.read_concern = read_concern or ReadConcern("snapshot")
        self.write_concern = write_concern or WriteConcern("majority")

    async def _execute(self, work: Work):
        committed_hooks: List[CommitHook] = []

        async def callback(session):
            handle = TransactionHandle(session)
            result = await work(handle)
            committed_hooks[:] = handle.hooks
            return result

        async with await self.client.start_session() as session:
            result = await session.with_transaction(
                callback,
                read_concern=self.read_concern,
                write_concern=self.write_concern
            )

        logger.debug(f"[TRANSACTION] Committed with {len(committed_hooks)} post-commit hooks")
        return result, committed_hooks
