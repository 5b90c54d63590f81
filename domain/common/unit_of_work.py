"""Unit of Work 抽象定义"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from domain.payment.repository import LedgerStore


class AbstractUnitOfWork(ABC):
    """应用层事务边界控制抽象"""

    ledger: LedgerStore

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly
        self._after_commit: list[Callable[[], Awaitable[None]]] = []
        self.ledger = None  # type: ignore[assignment]

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc:
            self._after_commit.clear()
            await self.rollback()
            return
        # 只在非只读且未显式提交时自动提交
        if not self._readonly and not self._committed:
            try:
                await self.commit()
            except BaseException:
                self._after_commit.clear()
                raise
        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            await callback()

    def after_commit(self, callback: Callable[[], Awaitable[None]]) -> None:
        """登记提交成功后执行的回调（通知等副作用），回滚或提交失败时丢弃"""
        self._after_commit.append(callback)

    @abstractmethod
    async def commit(self) -> None:
        """提交事务"""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """回滚事务"""
        ...
