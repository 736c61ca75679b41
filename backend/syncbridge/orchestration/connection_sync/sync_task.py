
from __future__ import annotations
import logging, time
from typing import Any, Callable, Dict, Optional

from celery import shared_task

from syncbridge.db.session import SessionLocal
from syncbridge.orchestration.connection_sync.executor import StepResult, run_job_step
from syncbridge.orchestration.connection_sync.job_scheduler import sweep_jobs
from syncbridge.services import sync_log
from syncbridge.utils.clock import now_utc


logger = logging.getLogger(__name__)


def _step(job_id: str, **step_kwargs: Any) -> StepResult:
    db = SessionLocal()
    try:
        return run_job_step(db, job_id, **step_kwargs)
    finally:
        db.close()


"""
    Celery 入口：每次调用跑一步；需要等待时用 countdown 重投自己，worker 不 sleep。
    max_retries=None：等待次数由 item 级的 attempts 上限控制
"""
@shared_task(
    name="syncbridge.orchestration.connection_sync.run_sync_job",
    bind=True, max_retries=None, acks_late=True,
)
def run_sync_job(self, job_id: str) -> Dict[str, Any]:

    result = _step(job_id)
    if not result.done:
        logger.info("job.step.wait job=%s delay=%.2fs", job_id, result.delay)
        raise self.retry(countdown=result.delay)

    logger.info("job.step.done job=%s state=%s", job_id, result.state)
    return {"job_id": job_id, "state": result.state}


"""
    调试入口：当前进程内循环跑完整个 job；sleep 可注入（测试里传空函数）。
"""
def run_sync_job_inline(
    job_id: str,
    *,
    sleep: Callable[[float], None] = time.sleep,
    max_steps: Optional[int] = None,
    **step_kwargs: Any,
) -> Dict[str, Any]:

    steps = 0
    while True:
        result = _step(job_id, **step_kwargs)
        if result.done:
            return {"job_id": job_id, "state": result.state}

        steps += 1
        if max_steps is not None and steps >= max_steps:
            raise RuntimeError(f"run_sync_job_inline exceeded max_steps={max_steps} job={job_id}")
        sleep(result.delay)


"""
    beat 每 2 分钟：失活 job 回收 + 失败 job 重试
"""
@shared_task(name="syncbridge.orchestration.connection_sync.sweep_sync_jobs")
def sweep_sync_jobs() -> Dict[str, int]:
    db = SessionLocal()
    try:
        return sweep_jobs(db, now_utc())
    finally:
        db.close()


"""
    beat 每小时：按保留天数清理 sync_logs 和已结束 job 的 items
"""
@shared_task(name="syncbridge.orchestration.connection_sync.purge_sync_history")
def purge_sync_history() -> Dict[str, int]:
    db = SessionLocal()
    try:
        return sync_log.purge_expired(db, now_utc())
    finally:
        db.close()
