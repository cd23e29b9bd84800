"""离线操作队列.

两个子队列：主队列保存待推送的变更，失败队列保存推送失败、
等待重试的变更。操作在两者之间的移动在同一事务内完成，
同一操作不会同时出现在两个子队列中。
"""

import logging
from collections.abc import Callable
from typing import Any

from dolate.core.state import SyncState
from dolate.core.storage import STORAGE_ERRORS, KVStore, KVTransaction
from dolate.models.article import utcnow
from dolate.models.sync import OperationType, SyncOperation

logger = logging.getLogger(__name__)

SYNC_NAMESPACE = "sync"
QUEUE_KEY = "queue"
FAILED_QUEUE_KEY = "failed_queue"
DEFAULT_MAX_RETRIES = 3


class OperationQueue:
    """持久化的离线变更队列."""

    def __init__(
        self,
        store: KVStore,
        state: SyncState | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        self.store = store
        self.state = state or SyncState()
        self.max_retries = max_retries

    async def enqueue(
        self,
        type: OperationType,
        data: dict[str, Any],
        user_id: str,
        collection: str = "articles",
    ) -> SyncOperation | None:
        """追加一条新操作（新 ID、当前时间、重试次数 0）."""
        operation = SyncOperation(
            type=type,
            collection=collection,
            data=data,
            user_id=user_id,
        )
        try:
            async with self.store.transaction() as tx:
                queue, failed = await self._load(tx)
                queue.append(operation)
                await self._save(tx, queue, failed)
        except STORAGE_ERRORS as e:
            logger.error(f"写入离线队列失败 ({type} {operation.target_id}): {e}")
            return None

        logger.info(f"已加入离线队列: {type} {operation.target_id}")
        return operation

    async def get_queue(self) -> list[SyncOperation]:
        """主队列."""
        queue, _ = await self._read()
        return queue

    async def get_failed_queue(self) -> list[SyncOperation]:
        """失败队列."""
        _, failed = await self._read()
        return failed

    async def get_backlog(self) -> list[SyncOperation]:
        """全部待处理操作：主队列在前，失败队列在后."""
        queue, failed = await self._read()
        return queue + failed

    async def queue_size(self) -> int:
        """主队列与失败队列长度之和，即待同步变更数."""
        queue, failed = await self._read()
        return len(queue) + len(failed)

    async def dequeue_success(self, operation_id: str) -> bool:
        """远端确认成功后移除操作."""
        return await self._remove(lambda op: op.id == operation_id) > 0

    async def dequeue_failure(self, operation: SyncOperation) -> SyncOperation | None:
        """记录一次失败：重试次数加一并移入失败队列."""
        failed_op = operation.model_copy(
            update={
                "retry_count": operation.retry_count + 1,
                "last_failure": utcnow(),
            }
        )
        try:
            async with self.store.transaction() as tx:
                queue, failed = await self._load(tx)
                queue = [op for op in queue if op.id != operation.id]
                for index, existing in enumerate(failed):
                    if existing.id == operation.id:
                        failed[index] = failed_op
                        break
                else:
                    failed.append(failed_op)
                await self._save(tx, queue, failed)
        except STORAGE_ERRORS as e:
            logger.error(f"更新失败队列失败 ({operation.id}): {e}")
            return None
        return failed_op

    def is_exhausted(self, operation: SyncOperation) -> bool:
        """再失败一次是否达到重试上限."""
        return operation.retry_count + 1 >= self.max_retries

    async def discard(self, operation_id: str) -> bool:
        """从两个子队列中彻底丢弃操作."""
        removed = await self._remove(lambda op: op.id == operation_id)
        if removed:
            logger.warning(f"已丢弃离线操作: {operation_id}")
        return removed > 0

    async def discard_for_target(self, article_id: str) -> int:
        """丢弃针对某篇文章的全部操作（例如删除了尚未同步的新文章）."""
        removed = await self._remove(lambda op: op.target_id == article_id)
        if removed:
            logger.info(f"已丢弃文章 {article_id} 的 {removed} 个待同步操作")
        return removed

    async def remap_target(self, old_id: str, new_id: str) -> int:
        """将指向临时 ID 的待处理操作改写为服务端 ID."""
        count = 0
        try:
            async with self.store.transaction() as tx:
                queue, failed = await self._load(tx)

                def remap(ops: list[SyncOperation]) -> list[SyncOperation]:
                    nonlocal count
                    result = []
                    for op in ops:
                        if op.target_id == old_id:
                            op = op.with_target(new_id)
                            count += 1
                        result.append(op)
                    return result

                queue, failed = remap(queue), remap(failed)
                if count:
                    await self._save(tx, queue, failed)
        except STORAGE_ERRORS as e:
            logger.error(f"改写离线操作 ID 失败 ({old_id} -> {new_id}): {e}")
            return 0
        return count

    async def retry_failed(self) -> int:
        """将失败队列中的操作移回主队列（用户主动重试），保留重试次数."""
        try:
            async with self.store.transaction() as tx:
                queue, failed = await self._load(tx)
                moved = len(failed)
                await self._save(tx, queue + failed, [])
        except STORAGE_ERRORS as e:
            logger.error(f"重试失败队列失败: {e}")
            return 0
        logger.info(f"已将 {moved} 个失败操作移回主队列")
        return moved

    async def clear_failed(self) -> int:
        """清空失败队列."""
        try:
            async with self.store.transaction() as tx:
                queue, failed = await self._load(tx)
                await self._save(tx, queue, [])
        except STORAGE_ERRORS as e:
            logger.error(f"清空失败队列失败: {e}")
            return 0
        if failed:
            logger.warning(f"已丢弃 {len(failed)} 个失败操作")
        return len(failed)

    async def clear(self) -> None:
        """清空两个子队列."""
        try:
            async with self.store.transaction() as tx:
                await self._save(tx, [], [])
        except STORAGE_ERRORS as e:
            logger.error(f"清空离线队列失败: {e}")

    async def _read(self) -> tuple[list[SyncOperation], list[SyncOperation]]:
        try:
            async with self.store.transaction() as tx:
                return await self._load(tx)
        except STORAGE_ERRORS as e:
            logger.warning(f"读取离线队列失败: {e}")
            self.state.pending_changes = 0
            return [], []

    async def _remove(self, predicate: Callable[[SyncOperation], bool]) -> int:
        try:
            async with self.store.transaction() as tx:
                queue, failed = await self._load(tx)
                kept_queue = [op for op in queue if not predicate(op)]
                kept_failed = [op for op in failed if not predicate(op)]
                removed = len(queue) + len(failed) - len(kept_queue) - len(kept_failed)
                if removed:
                    await self._save(tx, kept_queue, kept_failed)
        except STORAGE_ERRORS as e:
            logger.error(f"移除离线操作失败: {e}")
            return 0
        return removed

    async def _load(
        self, tx: KVTransaction
    ) -> tuple[list[SyncOperation], list[SyncOperation]]:
        queue = await tx.get(SYNC_NAMESPACE, QUEUE_KEY, [])
        failed = await tx.get(SYNC_NAMESPACE, FAILED_QUEUE_KEY, [])
        operations = [SyncOperation.model_validate(op) for op in queue]
        failed_operations = [SyncOperation.model_validate(op) for op in failed]
        self.state.pending_changes = len(operations) + len(failed_operations)
        return operations, failed_operations

    async def _save(
        self,
        tx: KVTransaction,
        queue: list[SyncOperation],
        failed: list[SyncOperation],
    ) -> None:
        await tx.set(SYNC_NAMESPACE, QUEUE_KEY, [op.model_dump(mode="json") for op in queue])
        await tx.set(
            SYNC_NAMESPACE, FAILED_QUEUE_KEY, [op.model_dump(mode="json") for op in failed]
        )
        self.state.pending_changes = len(queue) + len(failed)
