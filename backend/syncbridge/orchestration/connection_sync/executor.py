"""
单个 sync job 的执行：一步 = 一次 Celery 调用（或 inline 循环里的一轮）
  1) claim：queued → running 条件更新
  2) 计划（只做一次）：拉两端 → compute_plan → 可执行的 item 落库 + 计数
  3) 按 position 逐个落地 item；要等待（限流/退避）时返回 delay，由调用方 countdown 重投
  4) 收尾：按失败比例判 succeeded / failed（到达重试上限为 dead）
  - 每个 item 边界检查 cancel_requested；删除请求在收尾后执行
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from syncbridge.core.config import settings
from syncbridge.db.model.connection import (
    Connection, PLATFORM_SHOPIFY, STATUS_DISABLED,
    DISABLED_DESTINATION_UNAUTHORIZED, DISABLED_MISSING_CREDENTIAL, DISABLED_SOURCE_UNAUTHORIZED,
)
from syncbridge.db.model.sync_job import (
    SyncJob, SyncJobItem,
    ITEM_FAILED, ITEM_SUCCEEDED, JOB_INCREMENTAL, JOB_PREVIEW,
    STATE_DEAD, STATE_FAILED, STATE_QUEUED, STATE_SUCCEEDED, TERMINAL_STATES,
)
from syncbridge.db.model.sync_log import CODE_JOB_DEAD, CODE_UNAUTHORIZED
from syncbridge.integrations.connector import CatalogItem, ItemRef, StoreConnector
from syncbridge.integrations.errors import ConnectorError, NotFound, Unauthorized, is_transient
from syncbridge.orchestration.connection_sync.planner import (
    SIDE_DESTINATION, SIDE_SOURCE, Connectors, DestinationFactory, SideUnauthorized, SourceFactory,
    build_plan, open_connectors, open_destination,
)
from syncbridge.repository import connection_repo, installation_repo, sync_job_repo
from syncbridge.services import sync_log
from syncbridge.services.diff_engine import ACTION_CREATE, SyncRules, summarize_plan
from syncbridge.utils.backoff import calc_item_delay
from syncbridge.utils.clock import now_utc


logger = logging.getLogger(__name__)

CODE_ITEM_SYNCED = "item_synced"
CODE_ITEM_FAILED = "item_failed"
CODE_JOB_SUCCEEDED = "job_succeeded"
CODE_JOB_FAILED = "job_failed"
CODE_JOB_CANCELLED = "job_cancelled"

_MIN_DELAY_SEC = 0.5


@dataclass(slots=True)
class StepResult:
    done: bool
    delay: float = 0.0            # done=False 时：多少秒后再跑下一步
    state: Optional[str] = None   # done=True 时：job 的终态


# ========================== 入口 ==========================
def run_job_step(
    db: Session,
    job_id: str,
    *,
    source_factory: Optional[SourceFactory] = None,
    dest_factory: Optional[DestinationFactory] = None,
) -> StepResult:

    job = sync_job_repo.get(db, job_id, fresh=True)
    if job is None:
        logger.warning("job.step.missing job=%s", job_id)
        return StepResult(done=True)
    if job.state in TERMINAL_STATES:
        return StepResult(done=True, state=job.state)

    # 1) claim
    if job.state == STATE_QUEUED:
        if not sync_job_repo.claim(db, job.id):
            job = sync_job_repo.get(db, job_id, fresh=True)
            logger.info("job.claim.lost job=%s state=%s", job_id, job.state if job else None)
            return StepResult(done=True, state=job.state if job else None)
        job = sync_job_repo.get(db, job_id, fresh=True)
        if job is None:
            logger.warning("job.step.vanished job=%s", job_id)
            return StepResult(done=True)
        logger.info("job.started job=%s connection=%s type=%s attempt=%s", job.id, job.connection_id, job.job_type, job.attempt)

    conn = connection_repo.get(db, job.connection_id)
    if conn is None:
        sync_job_repo.finish(db, job.id, STATE_FAILED, last_error="connection deleted", retryable=False)
        return StepResult(done=True, state=STATE_FAILED)

    if job.cancel_requested:
        return _stop_cancelled(db, job, conn)

    # 2) 凭证预检：没凭证不发请求
    installation = installation_repo.get(db, conn.installation_id)
    if installation is None or not installation.access_token:
        return _abort_unauthorized(db, job, conn, SIDE_SOURCE, "source store has no access token")
    if not _has_destination_credential(conn):
        return _abort_unauthorized(
            db, job, conn, SIDE_DESTINATION, "destination credential missing", reason=DISABLED_MISSING_CREDENTIAL
        )

    opened: List[StoreConnector] = []
    try:
        dest: Optional[StoreConnector] = None

        # 3) 计划
        if not job.plan_ready:
            connectors = open_connectors(installation, conn, source_factory=source_factory, dest_factory=dest_factory)
            opened.extend([connectors.source, connectors.destination])
            try:
                _plan(db, job, conn, connectors)
            except ConnectorError as e:
                return _plan_error(db, job, conn, e)
            if job.job_type == JOB_PREVIEW:
                return _finalise(db, job, conn)
            dest = connectors.destination

        # 4) 逐个落地
        while True:
            job = sync_job_repo.get(db, job_id, fresh=True)
            if job is None:
                return StepResult(done=True)
            if job.cancel_requested:
                return _stop_cancelled(db, job, conn)

            item = sync_job_repo.next_pending_item(db, job.id)
            if item is None:
                return _finalise(db, job, conn)

            now = now_utc()
            if item.next_attempt_at is not None and item.next_attempt_at > now:
                wait = (item.next_attempt_at - now).total_seconds()
                return StepResult(done=False, delay=max(_MIN_DELAY_SEC, wait))

            if dest is None:
                dest = open_destination(conn, dest_factory)
                opened.append(dest)

            delay = _apply_item(db, job, conn, dest, item)
            if delay is not None:
                # defer_item 已把心跳顺延成租约，这里不能再覆盖
                return StepResult(done=False, delay=max(_MIN_DELAY_SEC, delay))
            sync_job_repo.heartbeat(db, job.id)

    except SideUnauthorized as e:
        return _abort_unauthorized(db, job, conn, e.side, str(e.cause))
    finally:
        for c in opened:
            close = getattr(c, "close", None)
            if callable(close):
                close()


def _has_destination_credential(conn: Connection) -> bool:
    if conn.platform == PLATFORM_SHOPIFY:
        return bool(conn.dest_shop_domain and conn.dest_access_token)
    return bool(conn.base_url and conn.consumer_key and conn.consumer_secret)


# ========================== 计划 ==========================
def _plan(db: Session, job: SyncJob, conn: Connection, connectors: Connectors) -> None:
    scope = (job.scope_skus or []) if job.job_type == JOB_INCREMENTAL else None
    plan = build_plan(conn, connectors, scope_skus=scope)
    actionable = [p for p in plan if p.actionable]
    summary = summarize_plan(plan)

    if job.job_type != JOB_PREVIEW:
        sync_job_repo.insert_items(db, job.id, (
            {"position": pos, "sku": p.sku, "action": p.action, "payload": p.to_payload()}
            for pos, p in enumerate(actionable)
        ))
    # items 与计数在同一次 commit 落库
    sync_job_repo.update_fields(
        db, job.id,
        total=0 if job.job_type == JOB_PREVIEW else len(actionable),
        skipped=summary["skip"],
        plan_summary=summary,
        plan_ready=True,
        heartbeat_at=now_utc(),
    )
    logger.info(
        "job.planned job=%s create=%s update=%s skip=%s",
        job.id, summary["create"], summary["update"], summary["skip"],
    )


def _plan_error(db: Session, job: SyncJob, conn: Connection, err: ConnectorError) -> StepResult:
    """拉取失败：瞬时错误交给 countdown 重新计划（不在 worker 里睡），次数用完再判失败"""
    attempts = (job.retries or 0) + 1
    if not is_transient(err) or attempts >= settings.SYNC_ITEM_MAX_ATTEMPTS:
        return _finish_failed(db, job, conn, f"planning failed: {err}")

    delay = calc_item_delay(
        attempts,
        base_seconds=settings.SYNC_BACKOFF_BASE_SEC,
        multiplier=settings.SYNC_BACKOFF_MULTIPLIER,
        max_seconds=settings.SYNC_BACKOFF_MAX_SEC,
        jitter=settings.SYNC_BACKOFF_JITTER,
        retry_after=getattr(err, "retry_after", None),
    )
    sync_job_repo.defer_plan(db, job.id, until=now_utc() + timedelta(seconds=delay), last_error=str(err))
    logger.warning("job.plan.retry job=%s attempts=%s delay=%.2fs err=%s", job.id, attempts, delay, err)
    return StepResult(done=False, delay=max(_MIN_DELAY_SEC, delay))


# ========================== 单个 item ==========================
def _apply_item(db: Session, job: SyncJob, conn: Connection, dest: StoreConnector, item: SyncJobItem) -> Optional[float]:
    """返回 None 表示 item 已落终态；返回秒数表示需要等待后重试。"""
    attempts = (item.attempts or 0) + 1
    try:
        done_action = _push(dest, conn, item)
    except Unauthorized as e:
        raise SideUnauthorized(SIDE_DESTINATION, e) from e
    except ConnectorError as e:
        return _item_error(db, job, conn, item, attempts, e)

    sync_job_repo.settle_item(db, job.id, item.id, ITEM_SUCCEEDED, attempts=attempts)
    sync_log.info(db, f"{done_action} {item.sku}", code=CODE_ITEM_SYNCED, connection_id=conn.id, job_id=job.id, sku=item.sku)
    return None


def _push(dest: StoreConnector, conn: Connection, item: SyncJobItem) -> str:
    payload = item.payload or {}

    if item.action == ACTION_CREATE:
        _create(dest, conn, CatalogItem.from_payload(payload.get("item") or {}))
        return "created"

    try:
        dest.update_item(
            item.sku,
            payload.get("deltas") or {},
            ref=ItemRef.from_dict(payload.get("ref")),
            location_id=conn.dest_location_id,
        )
        return "updated"
    except NotFound:
        # 计划之后目标端被删了：允许创建时回退为 create
        if not conn.create_missing or not payload.get("item"):
            raise
        logger.info("item.update.not_found_create job=%s sku=%s", item.job_id, item.sku)
        _create(dest, conn, CatalogItem.from_payload(payload["item"]))
        return "created"


def _create(dest: StoreConnector, conn: Connection, item: CatalogItem) -> None:
    # SKU 在目标端已存在时连接器改走更新，只写规则打开的字段
    rules = SyncRules.from_connection(conn, capabilities=getattr(dest, "capabilities", None))
    dest.create_item(item, publish=bool(conn.publish_new), location_id=conn.dest_location_id, sync_fields=rules.write_fields())


def _item_error(
    db: Session, job: SyncJob, conn: Connection, item: SyncJobItem, attempts: int, err: ConnectorError
) -> Optional[float]:
    if is_transient(err) and attempts < settings.SYNC_ITEM_MAX_ATTEMPTS:
        delay = calc_item_delay(
            attempts,
            base_seconds=settings.SYNC_BACKOFF_BASE_SEC,
            multiplier=settings.SYNC_BACKOFF_MULTIPLIER,
            max_seconds=settings.SYNC_BACKOFF_MAX_SEC,
            jitter=settings.SYNC_BACKOFF_JITTER,
            retry_after=getattr(err, "retry_after", None),
        )
        sync_job_repo.defer_item(
            db, job.id, item.id,
            attempts=attempts,
            next_attempt_at=now_utc() + timedelta(seconds=delay),
            last_error=str(err),
        )
        logger.warning(
            "item.retry job=%s sku=%s attempts=%s delay=%.2fs err=%s",
            job.id, item.sku, attempts, delay, err,
        )
        return delay

    sync_job_repo.settle_item(db, job.id, item.id, ITEM_FAILED, attempts=attempts, last_error=str(err))
    sync_log.error(
        db, f"{item.action} {item.sku} failed: {err}",
        code=CODE_ITEM_FAILED, connection_id=conn.id, job_id=job.id, sku=item.sku,
        details={"attempts": attempts, "status_code": err.status_code, "error": type(err).__name__},
    )
    return None


# ========================== 收尾 ==========================
def _finalise(db: Session, job: SyncJob, conn: Connection) -> StepResult:
    job = sync_job_repo.get(db, job.id, fresh=True) or job
    total, completed, failed = job.total or 0, job.completed or 0, job.failed or 0

    if job.job_type != JOB_PREVIEW and total > 0 and failed / total >= settings.SYNC_PARTIAL_FAILURE_RATIO:
        return _finish_failed(db, job, conn, f"{failed} of {total} items failed")

    sync_job_repo.finish(db, job.id, STATE_SUCCEEDED)
    if job.job_type != JOB_PREVIEW and (completed > 0 or total == 0):
        connection_repo.update_fields(db, conn.id, last_synced_at=now_utc())

    sync_log.info(
        db, f"sync {job.job_type} finished: {completed} completed, {failed} failed, {job.skipped or 0} skipped",
        code=CODE_JOB_SUCCEEDED, connection_id=conn.id, job_id=job.id,
    )
    logger.info("job.succeeded job=%s total=%s completed=%s failed=%s", job.id, total, completed, failed)
    _after_stop(db, conn.id)
    return StepResult(done=True, state=STATE_SUCCEEDED)


def _finish_failed(db: Session, job: SyncJob, conn: Connection, message: str) -> StepResult:
    """可重试的失败；attempt 到上限直接 dead"""
    dead = job.attempt >= settings.SYNC_JOB_RETRY_CEILING
    state = STATE_DEAD if dead else STATE_FAILED
    sync_job_repo.finish(db, job.id, state, last_error=message, retryable=True)
    if dead:
        sync_log.error(
            db, f"sync job dead after {job.attempt} attempts: {message}",
            code=CODE_JOB_DEAD, connection_id=conn.id, job_id=job.id,
        )
    else:
        sync_log.error(db, f"sync failed: {message}", code=CODE_JOB_FAILED, connection_id=conn.id, job_id=job.id)
    logger.warning("job.%s job=%s attempt=%s err=%s", state, job.id, job.attempt, message)
    _after_stop(db, conn.id)
    return StepResult(done=True, state=state)


def _stop_cancelled(db: Session, job: SyncJob, conn: Connection) -> StepResult:
    sync_job_repo.finish(db, job.id, STATE_FAILED, last_error="cancelled", retryable=False)
    sync_log.info(db, "sync cancelled", code=CODE_JOB_CANCELLED, connection_id=conn.id, job_id=job.id)
    logger.info("job.cancelled job=%s completed=%s", job.id, job.completed)
    _after_stop(db, conn.id)
    return StepResult(done=True, state=STATE_FAILED)


"""
  凭证失效：job 直接失败且不自动重试，connection disable
    - 源端：丢弃 installation token，同一 installation 的 connection 全部 disable（重新安装后恢复）
    - 目标端：只 disable 这一条（更新凭证后恢复）
"""
def _abort_unauthorized(
    db: Session,
    job: SyncJob,
    conn: Connection,
    side: str,
    message: str,
    *,
    reason: Optional[str] = None,
) -> StepResult:
    sync_job_repo.finish(db, job.id, STATE_FAILED, last_error=f"{side} unauthorized: {message}", retryable=False)

    if side == SIDE_SOURCE:
        reason = reason or DISABLED_SOURCE_UNAUTHORIZED
        installation_repo.clear_token(db, conn.installation_id)
        connection_repo.disable_for_installation(db, conn.installation_id, reason)
    else:
        reason = reason or DISABLED_DESTINATION_UNAUTHORIZED
        connection_repo.set_status(db, conn.id, STATUS_DISABLED, disabled_reason=reason)

    sync_log.error(
        db, f"{side} store rejected credentials: {message}",
        code=CODE_UNAUTHORIZED, connection_id=conn.id, job_id=job.id, details={"side": side, "reason": reason},
    )
    logger.warning("job.unauthorized job=%s connection=%s side=%s reason=%s", job.id, conn.id, side, reason)
    _after_stop(db, conn.id)
    return StepResult(done=True, state=STATE_FAILED)


def _after_stop(db: Session, connection_id: str) -> None:
    conn = connection_repo.get(db, connection_id)
    if conn is not None and conn.delete_requested_at is not None:
        connection_repo.delete_cascade(db, connection_id)
        logger.info("connection.deleted.after_stop id=%s", connection_id)
