"""HTTP 接口 - 结果录入与一致性审计

外部调用方（结果录入表单、批量导入、管理员纠错工具）都通过
POST /api/outcomes 记录结果，不直接写预约或到课记录。

路由：
- POST /api/outcomes                    → 记录一次到课结果
- GET  /api/audit                       → 执行全量审计（?save=true 保存）
- POST /api/audit/fixes/{fix_action}    → 执行一个修复动作
- GET  /api/audit/history               → 最近的审计汇总
- GET  /api/follow-ups/due              → 今日到期的跟进
- POST /api/follow-ups/{entry_id}/sent    → 标记跟进已发送
- POST /api/follow-ups/{entry_id}/snooze  → 暂缓跟进
- GET  /health                          → 健康检查

使用方式：
    ```python
    app = create_app(DatabaseManager())
    uvicorn.run(app, host="0.0.0.0", port=8080)
    ```
"""
from datetime import date, datetime
from typing import Optional, Union

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel

from database import DatabaseManager
from pipeline.auditor import ConsistencyAuditor
from pipeline.orchestrator import (
    OutcomeOrchestrator, OutcomeParams, SecondVisitDraft
)


class SecondVisitRequest(BaseModel):
    start_at: datetime
    coach_name: Optional[str] = None


class OutcomeRequest(BaseModel):
    """结果录入请求体（没有提成字段）"""
    appointment_id: Optional[int] = None
    member_name: str
    attempt_date: Union[date, str]
    new_result: str
    editor: str
    source_label: str
    previous_result: Optional[str] = None
    sale_tier: Optional[str] = None
    lead_source: Optional[str] = None
    objection: Optional[str] = None
    coach_name: Optional[str] = None
    reason: Optional[str] = None
    run_id: Optional[int] = None
    second_visit: Optional[SecondVisitRequest] = None

    def to_params(self) -> OutcomeParams:
        second_visit = None
        if self.second_visit is not None:
            second_visit = SecondVisitDraft(
                start_at=self.second_visit.start_at,
                coach_name=self.second_visit.coach_name,
            )
        return OutcomeParams(
            appointment_id=self.appointment_id,
            member_name=self.member_name,
            attempt_date=self.attempt_date,
            new_result=self.new_result,
            editor=self.editor,
            source_label=self.source_label,
            previous_result=self.previous_result,
            sale_tier=self.sale_tier,
            lead_source=self.lead_source,
            objection=self.objection,
            coach_name=self.coach_name,
            reason=self.reason,
            run_id=self.run_id,
            second_visit=second_visit,
        )


class FollowUpSentRequest(BaseModel):
    editor: str


class FollowUpSnoozeRequest(BaseModel):
    until: date


def create_app(db: DatabaseManager,
               orchestrator: Optional[OutcomeOrchestrator] = None,
               auditor: Optional[ConsistencyAuditor] = None) -> FastAPI:
    """创建 FastAPI 应用

    Args:
        db: 数据库管理器
        orchestrator: 结果编排器（可选，默认按 db 创建）
        auditor: 一致性审计器（可选，默认按 db 创建）
    """
    orchestrator = orchestrator or OutcomeOrchestrator(db)
    auditor = auditor or ConsistencyAuditor(db)

    app = FastAPI(
        title="Studio Pipeline",
        description="体验课结果编排与一致性审计",
    )

    # ==================== 结果录入 ====================

    @app.post("/api/outcomes")
    def apply_outcome(request: OutcomeRequest):
        """记录一次到课结果"""
        result = orchestrator.apply_outcome(request.to_params())
        if not result.success:
            return JSONResponse(status_code=409, content=result.to_dict())
        return result.to_dict()

    # ==================== 一致性审计 ====================

    @app.get("/api/audit")
    def run_audit(save: bool = False):
        """执行全量审计"""
        audit = auditor.run_full_audit()
        payload = audit.to_dict()
        if save:
            payload["saved_id"] = auditor.save_run(audit, run_by="api")
        return payload

    @app.post("/api/audit/fixes/{fix_action}")
    def run_fix(fix_action: str):
        """执行一个修复动作"""
        if fix_action not in auditor.fixes:
            raise HTTPException(
                status_code=400, detail=f"未知的修复动作: {fix_action}"
            )
        result = auditor.run_fix(fix_action)
        if result.error:
            logger.error(f"修复 {fix_action} 出错: {result.error}")
        return result.to_dict()

    @app.get("/api/audit/history")
    def audit_history(limit: int = 30):
        """最近的审计汇总"""
        return {"data": auditor.get_history(limit)}

    # ==================== 跟进队列 ====================

    @app.get("/api/follow-ups/due")
    def due_follow_ups():
        """今日到期的跟进"""
        return {"data": db.get_due_follow_ups()}

    @app.post("/api/follow-ups/{entry_id}/sent")
    def mark_follow_up_sent(entry_id: int, request: FollowUpSentRequest):
        """标记跟进已发送"""
        entry = db.mark_follow_up_sent(entry_id, request.editor)
        if entry is None:
            raise HTTPException(
                status_code=404, detail=f"跟进记录不存在: {entry_id}"
            )
        logger.info(f"跟进 {entry_id} 已由 {request.editor} 标记为已发送")
        return entry

    @app.post("/api/follow-ups/{entry_id}/snooze")
    def snooze_follow_up(entry_id: int, request: FollowUpSnoozeRequest):
        """暂缓跟进到指定日期"""
        entry = db.snooze_follow_up(entry_id, request.until)
        if entry is None:
            raise HTTPException(
                status_code=404, detail=f"跟进记录不存在: {entry_id}"
            )
        logger.info(f"跟进 {entry_id} 暂缓到 {request.until}")
        return entry

    # ==================== 健康检查 ====================

    @app.get("/health")
    def health_check():
        """健康检查"""
        return {
            "status": "ok",
            "database": db.database_url.split("://")[0],
        }

    return app
