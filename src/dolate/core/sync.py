"""同步服务 - 推送离线队列、全量同步与冲突检测.

状态机：Idle -> Draining -> Idle；全量同步（FullSyncing）与之正交，
总是先推送本地变更再拉取远端集合，避免用旧数据覆盖本地修改。
对外从不抛出异常，只返回结构化结果，由调用方决定是否提示用户。
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from dolate.core.articles import ArticleStore
from dolate.core.gateway import GatewayError, RejectedGatewayError, RemoteGateway
from dolate.core.queue import OperationQueue
from dolate.core.state import SyncState
from dolate.core.storage import KVStore
from dolate.models.article import Article, ArticlePatch, is_temporary_id, utcnow
from dolate.models.sync import SyncOperation, SyncRun

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5

ConflictType = Literal["local_newer", "server_newer"]
FailureKind = Literal["transient", "rejected"]


@dataclass
class ConflictRecord:
    """本地与远端版本不一致的文章."""

    article_id: str
    local_version: Article
    server_version: Article
    conflict_type: ConflictType


@dataclass
class OperationFailure:
    """单个操作的失败记录."""

    operation_id: str
    article_id: str
    type: str
    error: str
    kind: FailureKind
    discarded: bool = False


@dataclass
class DrainResult:
    """一次推送的汇总结果."""

    already_running: bool = False
    total: int = 0
    synced: int = 0
    failed: int = 0  # 可重试错误（含超过上限被丢弃的）
    rejected: int = 0  # 被远端拒绝，已移出队列
    discarded: int = 0  # 超过重试上限被丢弃
    deferred: int = 0  # 退避中或依赖未就绪，留在队列
    error: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    failures: list[OperationFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """整个积压中没有出现任何失败."""
        return (
            not self.already_running
            and self.error is None
            and self.failed == 0
            and self.rejected == 0
        )


@dataclass
class _TempIdTracker:
    """一次推送中临时 ID 的创建进度."""

    confirmed: dict[str, str] = field(default_factory=dict)  # 临时 ID -> 服务端 ID
    waiting: set[str] = field(default_factory=set)  # create 尚未得到结果
    stalled: set[str] = field(default_factory=set)  # create 退避中或暂时失败
    dropped: set[str] = field(default_factory=set)  # create 已被丢弃

    def resolve(self, op: SyncOperation) -> SyncOperation:
        if op.type != "create" and op.target_id in self.confirmed:
            return op.with_target(self.confirmed[op.target_id])
        return op


class SyncService:
    """同步服务."""

    def __init__(
        self,
        gateway: RemoteGateway,
        queue: OperationQueue,
        articles: ArticleStore,
        state: SyncState,
        batch_size: int = DEFAULT_BATCH_SIZE,
        backoff_base_seconds: float = 30.0,
        backoff_max_seconds: float = 1800.0,
        history_store: KVStore | None = None,
    ) -> None:
        self.gateway = gateway
        self.queue = queue
        self.articles = articles
        self.state = state
        self.batch_size = batch_size
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.history_store = history_store
        self._draining = False
        self._full_syncing = False
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def is_draining(self) -> bool:
        """是否有推送正在进行."""
        return self._draining

    def _acquire(self) -> bool:
        # 检查与置位之间没有 await，单事件循环内天然原子
        if self._draining:
            return False
        self._draining = True
        self._idle.clear()
        self.state.sync_in_progress = True
        return True

    def _release(self) -> None:
        self._draining = False
        self._idle.set()
        self.state.sync_in_progress = self._full_syncing

    # ---- 推送离线队列 ----

    async def drain_queue(self, force: bool = False) -> DrainResult:
        """
        推送离线队列（主队列与失败队列合并处理）.

        Args:
            force: 忽略退避时间，立即重试全部失败操作

        Returns:
            DrainResult: 推送结果；已有推送在进行时 already_running 为 True
        """
        if not self._acquire():
            logger.info("同步已在进行中")
            return DrainResult(already_running=True)

        result = DrainResult()
        try:
            await self._drain(result, force)
        except Exception as e:
            logger.exception("同步离线变更时出错")
            result.error = str(e)
        finally:
            self._release()

        if result.total:
            await self._record_run("drain", result)
        return result

    async def _drain(self, result: DrainResult, force: bool) -> None:
        backlog = await self.queue.get_backlog()
        result.total = len(backlog)
        if not backlog:
            logger.info("没有待同步的操作")
            return

        now = utcnow()
        tracker = _TempIdTracker()
        queued_creates = {
            op.target_id
            for op in backlog
            if op.type == "create" and is_temporary_id(op.target_id)
        }
        ready: list[SyncOperation] = []
        for op in backlog:
            if self._belongs_to_other_user(op) or not (force or self._is_due(op, now)):
                result.deferred += 1
                if op.type == "create" and op.target_id in queued_creates:
                    tracker.stalled.add(op.target_id)
                continue
            ready.append(op)
        tracker.waiting = {
            op.target_id for op in ready if op.type == "create"
        } & queued_creates
        tracker.dropped = set()

        logger.info(f"开始同步 {len(ready)} 个操作（{result.deferred} 个暂缓）")

        pending = ready
        while pending:
            batch, pending = await self._next_batch(pending, tracker, queued_creates, result)
            if not batch:
                result.deferred += len(pending)
                break

            outcomes = await asyncio.gather(
                *(self._process_operation(op) for op in batch),
                return_exceptions=True,
            )
            for op, outcome in zip(batch, outcomes, strict=True):
                await self._settle(op, outcome, tracker, result)

        logger.info(
            f"同步完成: 成功={result.synced}, 失败={result.failed}, "
            f"拒绝={result.rejected}, 丢弃={result.discarded}, 暂缓={result.deferred}"
        )

    async def _next_batch(
        self,
        pending: list[SyncOperation],
        tracker: _TempIdTracker,
        queued_creates: set[str],
        result: DrainResult,
    ) -> tuple[list[SyncOperation], list[SyncOperation]]:
        """取出下一批操作.

        指向临时 ID 的后续操作必须等到对应 create 被确认后才能发出，
        同一批内的操作互不依赖。
        """
        batch: list[SyncOperation] = []
        rest: list[SyncOperation] = []
        for op in pending:
            target = op.target_id
            if op.type != "create" and is_temporary_id(target):
                if target in tracker.confirmed:
                    op = tracker.resolve(op)
                elif target in tracker.stalled:
                    result.deferred += 1
                    continue
                elif target in tracker.waiting:
                    rest.append(op)
                    continue
                elif target in tracker.dropped or target not in queued_creates:
                    await self._reject(op, "目标文章的创建操作已不存在", result)
                    continue

            if len(batch) < self.batch_size:
                batch.append(op)
            else:
                rest.append(op)
        return batch, rest

    async def _process_operation(self, op: SyncOperation) -> Article | None:
        """对远端执行单个操作."""
        if op.collection != "articles":
            msg = f"不支持的数据表: {op.collection}"
            raise RejectedGatewayError(msg)

        if op.type == "create":
            return await self.gateway.create(Article.model_validate(op.data))

        if op.type == "update":
            changes = dict(op.data)
            article_id = str(changes.pop("id"))
            return await self.gateway.update(article_id, ArticlePatch.model_validate(changes))

        if op.type == "delete":
            await self.gateway.delete(op.target_id)
            return None

        msg = f"不支持的操作类型: {op.type}"
        raise RejectedGatewayError(msg)

    async def _settle(
        self,
        op: SyncOperation,
        outcome: Article | BaseException | None,
        tracker: _TempIdTracker,
        result: DrainResult,
    ) -> None:
        """根据单个操作的结果更新队列与本地状态."""
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome

        is_temp_create = op.type == "create" and is_temporary_id(op.target_id)

        if isinstance(outcome, (RejectedGatewayError, ValidationError)):
            await self._reject(op, str(outcome), result)
            if is_temp_create:
                tracker.waiting.discard(op.target_id)
                tracker.dropped.add(op.target_id)
                # 远端不会接受这篇文章，撤掉本地的乐观插入
                await self.articles.apply_remote_delete(op.target_id)
            return

        if isinstance(outcome, BaseException):
            result.failed += 1
            discarded = self.queue.is_exhausted(op)
            logger.error(f"同步操作失败 {op.id} ({op.type} {op.target_id}): {outcome}")
            if discarded:
                await self.queue.discard(op.id)
                result.discarded += 1
                logger.error(f"操作 {op.id} 超过重试上限，已丢弃")
            else:
                await self.queue.dequeue_failure(op)

            result.failures.append(
                OperationFailure(
                    operation_id=op.id,
                    article_id=op.target_id,
                    type=op.type,
                    error=str(outcome),
                    kind="transient",
                    discarded=discarded,
                )
            )
            if is_temp_create:
                tracker.waiting.discard(op.target_id)
                (tracker.dropped if discarded else tracker.stalled).add(op.target_id)
            return

        await self._apply_success(op, outcome, tracker)
        await self.queue.dequeue_success(op.id)
        result.synced += 1

    async def _reject(self, op: SyncOperation, reason: str, result: DrainResult) -> None:
        await self.queue.discard(op.id)
        result.rejected += 1
        result.failures.append(
            OperationFailure(
                operation_id=op.id,
                article_id=op.target_id,
                type=op.type,
                error=reason,
                kind="rejected",
                discarded=True,
            )
        )
        logger.warning(f"操作被拒绝 {op.id} ({op.type} {op.target_id}): {reason}")

    async def _apply_success(
        self,
        op: SyncOperation,
        outcome: Article | None,
        tracker: _TempIdTracker,
    ) -> None:
        """把远端确认的结果写回本地缓存与内存状态."""
        if op.type == "create" and outcome is not None:
            temp_id = op.target_id
            if is_temporary_id(temp_id):
                tracker.confirmed[temp_id] = outcome.id
                tracker.waiting.discard(temp_id)
                await self.articles.replace_temporary(temp_id, outcome)
            else:
                await self.articles.apply_remote_upsert(outcome)
        elif op.type == "update" and outcome is not None:
            await self.articles.apply_remote_upsert(outcome)
        elif op.type == "delete":
            await self.articles.apply_remote_delete(op.target_id)

    def _is_due(self, op: SyncOperation, now: datetime) -> bool:
        """失败过的操作按指数退避决定是否可以重试."""
        if op.retry_count == 0 or op.last_failure is None:
            return True
        delay = min(
            self.backoff_base_seconds * 2 ** (op.retry_count - 1),
            self.backoff_max_seconds,
        )
        return now >= op.last_failure + timedelta(seconds=delay)

    def _belongs_to_other_user(self, op: SyncOperation) -> bool:
        """操作不属于当前登录用户（未登录时所有操作都暂缓）."""
        user_id = self.articles.user_id
        return user_id is None or op.user_id != user_id

    # ---- 单篇同步 ----

    async def sync_single_article(self, article_id: str) -> bool:
        """只推送某篇文章在主队列中的操作，遇到第一个失败即停止."""
        if not self._acquire():
            logger.info("同步已在进行中")
            return False

        try:
            operations = [
                op
                for op in await self.queue.get_queue()
                if op.target_id == article_id and not self._belongs_to_other_user(op)
            ]
            result = DrainResult(total=len(operations))
            tracker = _TempIdTracker()
            for op in operations:
                op = tracker.resolve(op)
                outcome: Article | BaseException | None
                try:
                    outcome = await self._process_operation(op)
                except Exception as e:
                    outcome = e
                await self._settle(op, outcome, tracker, result)
                if result.failed or result.rejected:
                    return False
            return True
        except Exception:
            logger.exception(f"同步单篇文章时出错: {article_id}")
            return False
        finally:
            self._release()

    # ---- 全量同步 ----

    async def full_sync(self, user_id: str) -> bool:
        """
        全量同步：先推送离线队列，再用远端集合整体替换本地.

        推送阶段有失败也会继续拉取并更新同步时间；返回值表示推送阶段是否全部成功。
        """
        self._full_syncing = True
        self.state.sync_in_progress = True
        try:
            drain = await self.drain_queue()
            while drain.already_running:
                logger.info("等待进行中的推送完成")
                await self._idle.wait()
                drain = await self.drain_queue()

            try:
                server_articles = await self.gateway.list(user_id)
            except GatewayError as e:
                logger.warning(f"全量同步拉取失败，保留本地数据: {e}")
                drain.error = drain.error or str(e)
                await self._record_run("full", drain)
                return False

            await self.articles.set_articles(server_articles, user_id)
            self.state.last_sync_time = utcnow()
            logger.info(f"全量同步完成: {len(server_articles)} 篇文章")
            await self._record_run("full", drain, articles_fetched=len(server_articles))
            return drain.success

        except Exception:
            logger.exception("全量同步时出错")
            return False
        finally:
            self._full_syncing = False
            self.state.sync_in_progress = self._draining

    # ---- 冲突检测 ----

    async def check_conflicts(self, user_id: str) -> list[ConflictRecord]:
        """对比内存文章与远端最新数据，按 updated_at 分类冲突（只读，不自动解决）."""
        try:
            server_articles = await self.gateway.list(user_id)
        except GatewayError as e:
            logger.warning(f"检查冲突时拉取远端失败: {e}")
            return []

        server_by_id = {article.id: article for article in server_articles}
        conflicts: list[ConflictRecord] = []

        for local in self.articles.articles:
            if local.user_id != user_id:
                continue
            server = server_by_id.get(local.id)
            if server is None or server.updated_at == local.updated_at:
                continue
            conflicts.append(
                ConflictRecord(
                    article_id=local.id,
                    local_version=local,
                    server_version=server,
                    conflict_type=(
                        "local_newer"
                        if local.updated_at > server.updated_at
                        else "server_newer"
                    ),
                )
            )

        return conflicts

    # ---- 同步记录 ----

    async def _record_run(
        self,
        sync_type: str,
        result: DrainResult,
        articles_fetched: int = 0,
    ) -> None:
        """写入同步记录，失败只记日志."""
        if self.history_store is None:
            return

        if result.error:
            status = "failed"
        elif result.success:
            status = "success"
        else:
            status = "partial"

        run = SyncRun(
            sync_type=sync_type,
            status=status,
            operations_synced=result.synced,
            operations_failed=result.failed + result.rejected,
            operations_discarded=result.discarded + result.rejected,
            articles_fetched=articles_fetched,
            error_message=result.error,
            started_at=result.started_at,
            completed_at=utcnow(),
        )
        try:
            async with self.history_store.session() as session:
                session.add(run)
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning(f"写入同步记录失败: {e}")

    async def get_recent_runs(self, limit: int = 5) -> list[SyncRun]:
        """获取最近的同步记录."""
        if self.history_store is None:
            return []
        stmt = select(SyncRun).order_by(SyncRun.started_at.desc()).limit(limit)  # type: ignore[attr-defined]
        try:
            async with self.history_store.session() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.warning(f"读取同步记录失败: {e}")
            return []
