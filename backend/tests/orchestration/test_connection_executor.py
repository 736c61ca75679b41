"""
执行器：假连接器 + 内存库
  - drive_job 反复跑 run_job_step，遇到等待直接清掉 next_attempt_at
"""
from decimal import Decimal

import pytest

from syncbridge.db.model.connection import (
    DISABLED_DESTINATION_UNAUTHORIZED, DISABLED_MISSING_CREDENTIAL, DISABLED_SOURCE_UNAUTHORIZED,
    STATUS_ACTIVE, STATUS_DISABLED,
)
from syncbridge.db.model.sync_job import (
    ITEM_FAILED, ITEM_SUCCEEDED, JOB_FULL_SYNC, JOB_INCREMENTAL, JOB_PREVIEW,
    STATE_DEAD, STATE_FAILED, STATE_SUCCEEDED, TRIGGER_MANUAL,
)
from syncbridge.db.model.sync_log import CODE_UNAUTHORIZED
from syncbridge.integrations.connector import CatalogItem
from syncbridge.integrations.errors import Conflict, NotFound, RateLimited, Unauthorized, UpstreamServerError
from syncbridge.orchestration.connection_sync import job_scheduler, sync_task
from syncbridge.orchestration.connection_sync.executor import CODE_ITEM_FAILED, run_job_step
from syncbridge.repository import connection_repo, installation_repo, sync_job_repo, sync_log_repo


def _item(sku, price="10.00", stock=5) -> CatalogItem:
    return CatalogItem(sku=sku, title=f"Item {sku}", price=Decimal(price), stock=stock)


@pytest.fixture
def enqueue(db, connection, dispatcher):
    def _enqueue(job_type=JOB_FULL_SYNC, **kw):
        return job_scheduler.enqueue(db, connection.id, job_type, TRIGGER_MANUAL, dispatcher=dispatcher, **kw)
    return _enqueue


def _job(db, job_id):
    return sync_job_repo.get(db, job_id, fresh=True)


# ---------- 正常路径 ----------
def test_full_sync_creates_and_updates_destination(db, connection, enqueue, fake_store, drive_job):
    source = fake_store([_item("A"), _item("B", price="12.00"), _item("C")])
    dest = fake_store([_item("B", price="11.00"), _item("C")])
    job = enqueue()

    results = drive_job(job.id, source, dest)

    assert results[-1].state == STATE_SUCCEEDED
    assert [i.sku for i in dest.created] == ["A"]
    assert dest.updated == [("B", {"price": {"old": "11.00", "new": "12.00"}})]

    row = _job(db, job.id)
    assert (row.total, row.completed, row.failed, row.skipped) == (2, 2, 0, 1)
    assert row.plan_summary["skip"] == 1
    assert connection_repo.get(db, connection.id).last_synced_at is not None
    assert source.closed and dest.closed


def test_nothing_to_do_still_succeeds(db, enqueue, fake_store, drive_job):
    source = fake_store([_item("A")])
    dest = fake_store([_item("A")])
    job = enqueue()

    assert drive_job(job.id, source, dest)[-1].state == STATE_SUCCEEDED
    assert _job(db, job.id).total == 0


def test_incremental_only_touches_scoped_skus(db, enqueue, fake_store, drive_job):
    source = fake_store([_item("A"), _item("B", stock=9)])
    dest = fake_store([_item("A", stock=1), _item("B", stock=1)])
    job = enqueue(JOB_INCREMENTAL, scope_skus=["B"])

    drive_job(job.id, source, dest)

    assert [sku for sku, _ in dest.updated] == ["B"]


def test_preview_job_writes_nothing(db, enqueue, fake_store, drive_job):
    source = fake_store([_item("A"), _item("B")])
    dest = fake_store([_item("B", price="1.00")])
    job = enqueue(JOB_PREVIEW)

    assert drive_job(job.id, source, dest)[-1].state == STATE_SUCCEEDED
    assert dest.created == [] and dest.updated == []

    row = _job(db, job.id)
    assert row.total == 0
    assert (row.plan_summary["create"], row.plan_summary["update"]) == (1, 1)
    assert sync_job_repo.list_items(db, job.id) == []


# ---------- item 级重试 ----------
def test_rate_limit_defers_item_with_retry_after(db, enqueue, fake_store, drive_job):
    source = fake_store([_item("A")])
    dest = fake_store([], errors={"A": [RateLimited(retry_after=7)]})
    job = enqueue()

    results = drive_job(job.id, source, dest)

    assert results[0].done is False
    assert results[0].delay == pytest.approx(7.0)
    assert results[-1].state == STATE_SUCCEEDED

    row = _job(db, job.id)
    assert (row.completed, row.retries) == (1, 1)
    [item] = sync_job_repo.list_items(db, job.id)
    assert (item.state, item.attempts) == (ITEM_SUCCEEDED, 2)


def test_rate_limited_three_times_then_succeeds_on_fourth_attempt(db, enqueue, fake_store, drive_job):
    source = fake_store([_item("A")])
    dest = fake_store([], errors={"A": [RateLimited(retry_after=2)] * 3})
    job = enqueue()

    results = drive_job(job.id, source, dest)

    assert [r.done for r in results] == [False, False, False, True]
    assert results[-1].state == STATE_SUCCEEDED
    assert [i.sku for i in dest.created] == ["A"]

    row = _job(db, job.id)
    assert (row.completed, row.failed, row.retries) == (1, 0, 3)
    [item] = sync_job_repo.list_items(db, job.id)
    assert (item.state, item.attempts) == (ITEM_SUCCEEDED, 4)


def test_step_waits_until_next_attempt(db, enqueue, fake_store):
    source = fake_store([_item("A")])
    dest = fake_store([], errors={"A": [RateLimited(retry_after=20)]})
    job = enqueue()
    factories = dict(source_factory=lambda _i: source, dest_factory=lambda _c: dest)

    first = run_job_step(db, job.id, **factories)
    second = run_job_step(db, job.id, **factories)

    assert first.done is False and second.done is False
    assert 0.5 <= second.delay <= 20
    assert dest.created == []


def test_permanent_item_error_fails_only_that_item(db, connection, enqueue, fake_store, drive_job):
    source = fake_store([_item("A"), _item("B"), _item("C")])
    dest = fake_store([], errors={"A": [Conflict("handle taken", status_code=409)]})
    job = enqueue()

    assert drive_job(job.id, source, dest)[-1].state == STATE_SUCCEEDED

    row = _job(db, job.id)
    assert (row.completed, row.failed) == (2, 1)
    failed = sync_job_repo.list_items(db, job.id, state=ITEM_FAILED)
    assert [i.sku for i in failed] == ["A"]

    logs = sync_log_repo.recent(db, connection.id)
    assert any(log.code == CODE_ITEM_FAILED and log.sku == "A" for log in logs)


def test_transient_error_gives_up_after_max_attempts(db, enqueue, fake_store, drive_job):
    source = fake_store([_item("A")])
    dest = fake_store([], errors={"A": [UpstreamServerError("502", status_code=502)] * 10})
    job = enqueue()

    results = drive_job(job.id, source, dest)

    assert results[-1].state == STATE_FAILED
    [item] = sync_job_repo.list_items(db, job.id)
    assert item.state == ITEM_FAILED
    assert item.attempts == 5
    assert _job(db, job.id).retryable is True


def test_update_falls_back_to_create_when_destination_item_vanished(db, enqueue, fake_store, drive_job):
    source = fake_store([_item("B", price="12.00")])
    dest = fake_store([_item("B", price="11.00")], errors={"B": [NotFound("gone", status_code=404)]})
    job = enqueue()

    assert drive_job(job.id, source, dest)[-1].state == STATE_SUCCEEDED
    assert [i.sku for i in dest.created] == ["B"]


# ---------- job 级失败 ----------
def test_partial_failure_ratio_fails_job_and_last_attempt_is_dead(db, enqueue, fake_store, drive_job):
    source = fake_store([_item("A"), _item("B")])
    errors = {"A": [Conflict("dup")], "B": [Conflict("dup")]}

    job = enqueue()
    assert drive_job(job.id, source, fake_store([], errors=errors))[-1].state == STATE_FAILED

    last = enqueue(attempt=3)
    errors = {"A": [Conflict("dup")], "B": [Conflict("dup")]}
    assert drive_job(last.id, source, fake_store([], errors=errors))[-1].state == STATE_DEAD


def test_listing_error_fails_job_as_retryable(db, enqueue, fake_store, drive_job):
    source = fake_store([_item("A")], list_error=UpstreamServerError("503", status_code=503))
    job = enqueue()

    results = drive_job(job.id, source, fake_store([]))

    # 计划阶段的瞬时错误先走 countdown 重新计划，次数用完才失败
    assert [r.done for r in results] == [False] * 4 + [True]
    assert results[-1].state == STATE_FAILED
    assert source.list_calls == 5
    row = _job(db, job.id)
    assert row.retryable is True
    assert "planning failed" in row.last_error


# ---------- 凭证失效 ----------
def test_destination_unauthorized_disables_connection(db, connection, enqueue, fake_store, drive_job):
    source = fake_store([_item("A")])
    dest = fake_store([], errors={"A": [Unauthorized("revoked", status_code=401)]})
    job = enqueue()

    assert drive_job(job.id, source, dest)[-1].state == STATE_FAILED

    assert _job(db, job.id).retryable is False
    conn = connection_repo.get(db, connection.id)
    assert (conn.status, conn.disabled_reason) == (STATUS_DISABLED, DISABLED_DESTINATION_UNAUTHORIZED)
    assert any(log.code == CODE_UNAUTHORIZED for log in sync_log_repo.recent(db, connection.id))


def test_source_unauthorized_drops_token_and_disables_all_connections(
    db, installation, connection, make_connection, enqueue, fake_store, drive_job
):
    other = make_connection(installation, name="Second", dest_shop_domain="second.myshopify.com")
    source = fake_store([_item("A")], list_error=Unauthorized("token revoked", status_code=401))
    job = enqueue()

    assert drive_job(job.id, source, fake_store([]))[-1].state == STATE_FAILED

    assert installation_repo.get(db, installation.id).access_token is None
    for cid in (connection.id, other.id):
        conn = connection_repo.get(db, cid)
        assert (conn.status, conn.disabled_reason) == (STATUS_DISABLED, DISABLED_SOURCE_UNAUTHORIZED)


def test_missing_destination_credential_disables_without_calling_store(db, connection, enqueue, fake_store, drive_job):
    job = enqueue()
    connection_repo.update_fields(db, connection.id, dest_access_token=None)
    dest = fake_store([])

    assert drive_job(job.id, fake_store([_item("A")]), dest)[-1].state == STATE_FAILED

    conn = connection_repo.get(db, connection.id)
    assert conn.disabled_reason == DISABLED_MISSING_CREDENTIAL
    assert dest.list_calls == 0


# ---------- 取消 / 删除 ----------
def test_pause_cancels_job_before_any_write(db, connection, enqueue, fake_store, drive_job):
    job = enqueue()
    job_scheduler.pause(db, connection.id)
    dest = fake_store([])

    assert drive_job(job.id, fake_store([_item("A")]), dest)[-1].state == STATE_FAILED

    row = _job(db, job.id)
    assert (row.last_error, row.retryable) == ("cancelled", False)
    assert dest.created == []


def test_delete_requested_while_running_removes_connection_after_stop(db, connection, enqueue, fake_store):
    job = enqueue()
    assert sync_job_repo.claim(db, job.id)
    assert job_scheduler.delete_connection(db, connection.id, cancel_running=True).pending is True

    result = run_job_step(db, job.id, source_factory=lambda _i: fake_store([]), dest_factory=lambda _c: fake_store([]))

    assert result.state == STATE_FAILED
    assert connection_repo.get(db, connection.id) is None


def test_finished_job_step_is_a_noop(db, enqueue, fake_store, drive_job):
    job = enqueue()
    drive_job(job.id, fake_store([]), fake_store([]))

    again = run_job_step(db, job.id, source_factory=lambda _i: pytest.fail("should not open"))
    assert (again.done, again.state) == (True, STATE_SUCCEEDED)


# ---------- inline 入口 ----------
def test_inline_runner_sleeps_between_steps(db, connection, enqueue, fake_store):
    source = fake_store([_item("A")])
    dest = fake_store([], errors={"A": [RateLimited(retry_after=3)]})
    job = enqueue()
    sleeps = []

    out = sync_task.run_sync_job_inline(
        job.id,
        sleep=lambda s: (sleeps.append(s), _expire_waits(db, job.id)),
        source_factory=lambda _i: source,
        dest_factory=lambda _c: dest,
    )

    assert out == {"job_id": job.id, "state": STATE_SUCCEEDED}
    assert sleeps == [pytest.approx(3.0)]
    assert connection_repo.get(db, connection.id).status == STATUS_ACTIVE


def _expire_waits(db, job_id):
    for item in sync_job_repo.list_items(db, job_id, state="pending"):
        sync_job_repo.update_item(db, item.id, next_attempt_at=None)


def test_transient_listing_error_replans_after_countdown(db, enqueue, fake_store):
    source = fake_store([_item("A")], list_error=UpstreamServerError("502", status_code=502))
    dest = fake_store([])
    job = enqueue()
    factories = dict(source_factory=lambda _i: source, dest_factory=lambda _c: dest)

    first = run_job_step(db, job.id, **factories)
    assert first.done is False and first.delay >= 0.5
    assert _job(db, job.id).plan_ready is False

    source.list_error = None
    second = run_job_step(db, job.id, **factories)

    assert second.state == STATE_SUCCEEDED
    assert [i.sku for i in dest.created] == ["A"]
    assert _job(db, job.id).retries == 1


# ---------- 幂等 ----------
def test_rerun_after_success_plans_nothing(db, enqueue, fake_store, catalog_store, drive_job):
    source = fake_store([_item("A"), _item("B", price="12.00"), _item("C", stock=8)])
    dest = catalog_store([_item("B", price="11.00"), _item("C", stock=2)])

    first = enqueue()
    assert drive_job(first.id, source, dest)[-1].state == STATE_SUCCEEDED

    second = enqueue()
    assert drive_job(second.id, source, dest)[-1].state == STATE_SUCCEEDED

    row = _job(db, second.id)
    assert row.total == 0
    assert (row.plan_summary["create"], row.plan_summary["update"], row.plan_summary["skip"]) == (0, 0, 3)
    assert len(dest.created) == 1 and len(dest.updated) == 2


def test_create_passes_enabled_rule_fields(db, connection, enqueue, fake_store, drive_job):
    connection_repo.update_fields(db, connection.id, sync_tags=True)
    dest = fake_store([])

    drive_job(enqueue().id, fake_store([_item("A")]), dest)

    assert dest.create_fields == [("price", "tags")]
