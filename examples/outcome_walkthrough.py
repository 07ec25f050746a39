"""体验课结果完整流程示例

本示例展示一次体验课从爽约到成交的完整流程：
1. 初始化数据库，创建预约
2. 记录爽约：生成 3 条跟进
3. 记录成交：预约关闭、计算提成、忠诚计数 +1、清理跟进
4. 模拟数据漂移，运行一致性审计并修复

运行方式：
    python examples/outcome_walkthrough.py
"""
import sys
from datetime import date
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from database import DatabaseManager
from pipeline import ConsistencyAuditor, OutcomeOrchestrator, OutcomeParams

DATA_DIR = PROJECT_ROOT / "data"
DB_PATH = DATA_DIR / "walkthrough.db"


def build_manager() -> DatabaseManager:
    """初始化数据库管理器"""
    DATA_DIR.mkdir(exist_ok=True)
    if DB_PATH.exists():
        DB_PATH.unlink()  # 删除旧数据库，重新开始
    db = DatabaseManager(f"sqlite:///{DB_PATH}")
    db.create_tables()
    return db


def record(orchestrator, appointment_id, result):
    outcome = orchestrator.apply_outcome(OutcomeParams(
        appointment_id=appointment_id,
        member_name="Jordan Lee",
        attempt_date=date(2024, 1, 28),
        new_result=result,
        editor="Sam",
        source_label="walkthrough",
    ))
    print(f"✅ {result}: {outcome.status.value}, run={outcome.run_id}, "
          f"loyalty={outcome.did_increment_loyalty}, "
          f"follow_ups={outcome.did_generate_follow_ups}")
    return outcome


def main():
    db = build_manager()
    orchestrator = OutcomeOrchestrator(db)

    appointment_id = db.create_appointment({
        "member_name": "Jordan Lee",
        "class_date": "2024-01-28",
        "lead_source": "Instagram DM",
        "booked_by": "Sam",
        "intro_owner": "Sam",
        "phone": "5552013344",
    })

    print("\n📋 记录爽约")
    print("-" * 60)
    record(orchestrator, appointment_id, "No-show")
    for entry in db.get_follow_ups(appointment_id):
        print(f"   第 {entry['touch_number']} 次跟进: {entry['scheduled_date']}")

    print("\n💰 记录成交")
    print("-" * 60)
    outcome = record(orchestrator, appointment_id, "Tier-A-Sale")
    run = db.get_run_info(outcome.run_id)
    print(f"   提成: {run['commission_amount']}  忠诚计数: {db.get_loyalty_value()}")
    print(f"   剩余跟进: {len(db.get_follow_ups(appointment_id))}")

    print("\n🔍 模拟漂移并审计")
    print("-" * 60)
    db.execute_raw_sql(
        "UPDATE appointments SET status = 'active' WHERE id = :id",
        {"id": appointment_id},
    )
    auditor = ConsistencyAuditor(db)
    check = auditor.run_full_audit().get("Outcome Status Sync")
    print(f"   {check.check_name}: {check.status.value} {check.affected_ids}")
    print(f"   修复: {auditor.run_fix(check.fix_action).fixed} 条")
    check = auditor.run_full_audit().get("Outcome Status Sync")
    print(f"   复查: {check.status.value}")

    db.close()


if __name__ == "__main__":
    main()
