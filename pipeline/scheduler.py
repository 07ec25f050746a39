"""定时任务调度器 - 每日一致性审计

在 AsyncIOScheduler 上注册每日审计任务：执行全量审计并保存汇总。
修复动作不会被定时任务自动执行。
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from typing import Callable, Optional
from loguru import logger
from config.settings import settings
import asyncio
import functools

from .auditor import ConsistencyAuditor


class AuditScheduler:
    """审计调度器

    调度框架本身不含业务逻辑，审计通过 ConsistencyAuditor 注入
    """

    JOB_ID = "nightly_audit"

    def __init__(self, auditor: ConsistencyAuditor,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        """初始化调度器

        Args:
            auditor: 一致性审计器
            loop: 事件循环（可选，默认使用当前事件循环）
        """
        self.auditor = auditor
        if loop is None:
            try:
                loop = asyncio.get_event_loop()
                if loop.is_closed():
                    loop = asyncio.new_event_loop()
                    asyncio.set_event_loop(loop)
            except RuntimeError:
                loop = asyncio.new_event_loop()
                asyncio.set_event_loop(loop)
        self.scheduler = AsyncIOScheduler(event_loop=loop)

    def add_daily_task(
        self,
        task_func: Callable,
        hour: int = 21,
        minute: int = 0,
        task_id: str = 'daily_task',
        task_name: str = '每日任务'
    ):
        """添加每日定时任务

        Args:
            task_func: 任务函数
            hour: 小时 (0-23)
            minute: 分钟 (0-59)
            task_id: 任务ID
            task_name: 任务名称
        """
        self.scheduler.add_job(
            task_func,
            trigger=CronTrigger(hour=hour, minute=minute),
            id=task_id,
            name=task_name,
            replace_existing=True
        )
        logger.info(f"Added daily task '{task_name}' at {hour:02d}:{minute:02d}")

    def schedule_audit(self, hour: Optional[int] = None,
                       minute: Optional[int] = None):
        """注册每日审计任务（时间默认取自 settings）"""
        self.add_daily_task(
            self.run_audit_job,
            hour=settings.audit_schedule_hour if hour is None else hour,
            minute=settings.audit_schedule_minute if minute is None else minute,
            task_id=self.JOB_ID,
            task_name='每日一致性审计'
        )

    async def run_audit_job(self) -> int:
        """执行一次审计并保存，返回审计记录ID

        审计和保存都是同步的数据库操作，放到线程中执行以免阻塞事件循环
        """
        loop = asyncio.get_running_loop()
        audit = await loop.run_in_executor(None, self.auditor.run_full_audit)
        record_id = await loop.run_in_executor(
            None, functools.partial(
                self.auditor.save_run, audit, run_by="scheduler"
            )
        )
        logger.info(
            f"Nightly audit saved as #{record_id}: "
            f"{audit.fail_count} fail, {audit.warn_count} warn"
        )
        return record_id

    def start(self):
        """启动调度器"""
        self.scheduler.start()
        logger.info("Scheduler started")

    def stop(self):
        """停止调度器"""
        self.scheduler.shutdown()
        logger.info("Scheduler stopped")

    def remove_job(self, job_id: str):
        """移除任务

        Args:
            job_id: 任务ID
        """
        try:
            self.scheduler.remove_job(job_id)
            logger.info(f"Job {job_id} removed")
        except Exception as e:
            logger.warning(f"Failed to remove job {job_id}: {e}")
