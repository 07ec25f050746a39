"""初始化数据库

    python scripts/init_db.py            # 只建表
    python scripts/init_db.py --seed     # 建表并写入演示数据
"""
import argparse
import sys
import os

# 添加项目根目录到路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import DatabaseManager
from loguru import logger


def init_database(database_url=None, seed: bool = False) -> DatabaseManager:
    """初始化数据库，可选写入演示数据"""
    logger.info("Initializing database...")

    db = DatabaseManager(database_url)

    logger.info("Creating tables...")
    db.create_tables()

    if seed:
        logger.info("Inserting demo data...")
        db.create_lead({
            "first_name": "Jordan", "last_name": "Lee",
            "phone": "(555) 201-3344", "email": "jordan@example.com",
            "source": "Instagram DM",
        })
        appointment_id = db.create_appointment({
            "member_name": "Jordan Lee",
            "class_date": "2024-01-28",
            "class_time": "09:00",
            "lead_source": "Instagram DM",
            "booked_by": "Sam",
            "intro_owner": "Sam",
            "coach_name": "Riley",
            "phone": "5552013344",
            "email": "jordan@example.com",
        })
        logger.info(f"Created demo appointment: {appointment_id}")

    logger.info("Database initialization completed!")
    return db


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="初始化数据库")
    parser.add_argument("--db", default=None, help="数据库连接 URL")
    parser.add_argument("--seed", action="store_true", help="写入演示数据")
    args = parser.parse_args()
    init_database(args.db, seed=args.seed).close()
