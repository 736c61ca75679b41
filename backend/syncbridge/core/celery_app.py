# 分钟 Tick + 每个 job 一个任务（countdown 重投）

from celery import Celery
from kombu import Exchange, Queue
from syncbridge.core.config import settings
from syncbridge.core.logging import configure_logging

configure_logging()


'''
初始化 Celery 应用/实例
   - Beat/Orchestrator: 1 台
   - Worker: 按 connection 数量横向扩（每个 job 一次只在一个 worker 上跑）
'''
celery_app = Celery(
    "syncbridge_hub",
    broker=settings.CELERY_BROKER_URL,          # 队列位置
    backend=settings.CELERY_RESULT_BACKEND,     # 结果存储
    include=[
        # 让 Celery 在启动时就加载这些模块
        "syncbridge.orchestration.scheduler_tick",                    # 定时全量同步
        "syncbridge.orchestration.connection_sync.sync_task",         # job 执行 + 扫表
    ],
)


'''
  通用 Celery 配置
'''
celery_app.conf.update(
    timezone=settings.CELERY_TIMEZONE,           # 时区，默认 UTC
    enable_utc=True,                             # 内部还是存 UTC
    task_serializer="json",                      # 序列化格式 JSON
    accept_content=["json"],
    result_serializer="json",
    task_track_started=True,                     # 任务启动时标记 started
    broker_connection_retry_on_startup=True,     # 启动时如果 broker 挂了会重试
    # === 容错和超时控制 ===
    worker_prefetch_multiplier=1,    # 一个 worker 一次只取一个任务
    task_acks_late=True,             # worker crash 后任务回队列；job 从已落库的 item 状态继续
    broker_heartbeat=30,             # 和 broker 的心跳，防掉线
    broker_pool_limit=10,            # 连接池大小（按并发规模调）
)



'''
不同任务配置不同队列
   - orchestrator: 定时 tick / 扫表，轻量
   - sync_io: 真正调店铺 API 的 job，慢 I/O + 限流等待
'''
celery_app.conf.task_queues = (
    Queue("default", Exchange("default"), routing_key="default"),
    Queue("orchestrator", Exchange("orchestrator"), routing_key="orchestrator"),
    Queue("sync_io", Exchange("sync_io"), routing_key="sync_io"),
)
celery_app.conf.task_default_queue = "default"


celery_app.conf.task_routes = {
    # 定时调度 / 扫表
    "syncbridge.orchestration.scheduler_tick.tick_scheduled_sync": {"queue": "orchestrator"},
    "syncbridge.orchestration.connection_sync.sweep_sync_jobs": {"queue": "orchestrator"},
    "syncbridge.orchestration.connection_sync.purge_sync_history": {"queue": "orchestrator"},

    # job 执行（店铺 API）
    "syncbridge.orchestration.connection_sync.run_sync_job": {"queue": "sync_io"},
}



# 默认的静态调度
celery_app.conf.beat_schedule = {

    # 每 5 分钟由 DB 决定是否触发全量同步（开关/整点/窗口）
    "db-schedule-tick": {
        "task": "syncbridge.orchestration.scheduler_tick.tick_scheduled_sync",
        "schedule": 300,  # 秒
    },

    # 每 2 分钟：失活回收 + 失败重试
    "sync-job-sweeper": {
        "task": "syncbridge.orchestration.connection_sync.sweep_sync_jobs",
        "schedule": 120,
    },

    # 每小时：日志 / job items 保留窗口清理
    "sync-history-retention": {
        "task": "syncbridge.orchestration.connection_sync.purge_sync_history",
        "schedule": 3600,
    },
}
