#!/usr/bin/env python3
"""体验课销售漏斗 - 命令行入口

使用方式：
    # 初始化数据库
    python app.py init-db

    # 执行一次一致性审计（--save 保存汇总，--fix-all 执行所有可用修复）
    python app.py audit --save

    # 执行单个修复动作
    python app.py fix fix_outcome_status_sync

    # 查看最近的审计汇总
    python app.py history

    # 启动 HTTP 服务和每日审计
    python app.py serve --port 8080

环境变量（在 .env 文件中配置）：
    DATABASE_URL          数据库连接地址
    LOG_LEVEL             日志级别（默认 INFO）
    API_HOST / API_PORT   HTTP 服务地址（默认 0.0.0.0:8080）
    AUDIT_SCHEDULE_HOUR   每日审计时间（默认 21:00）
"""
import argparse
import asyncio
import json
import signal
import sys

from loguru import logger

from config.settings import settings


def _setup_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def _open_db(url):
    from database import DatabaseManager
    db = DatabaseManager(url)
    db.create_tables()
    logger.info(f"数据库已连接: {db.database_url}")
    return db


def cmd_init_db(args) -> int:
    db = _open_db(args.db)
    db.close()
    logger.info("数据库初始化完成")
    return 0


def cmd_audit(args) -> int:
    from pipeline.auditor import ConsistencyAuditor

    db = _open_db(args.db)
    try:
        auditor = ConsistencyAuditor(db)
        audit = auditor.run_full_audit()
        print(json.dumps(audit.to_dict(), indent=2, ensure_ascii=False))
        if args.save:
            record_id = auditor.save_run(audit, run_by="cli")
            logger.info(f"审计结果已保存: #{record_id}")
        if args.fix_all:
            for check_name, result in auditor.run_all_fixes(audit).items():
                print(f"{check_name}: fixed={result.fixed}"
                      + (f" error={result.error}" if result.error else ""))
        return 1 if audit.fail_count else 0
    finally:
        db.close()


def cmd_fix(args) -> int:
    from pipeline.auditor import ConsistencyAuditor

    db = _open_db(args.db)
    try:
        result = ConsistencyAuditor(db).run_fix(args.action)
        print(json.dumps(result.to_dict(), ensure_ascii=False))
        return 1 if result.error else 0
    finally:
        db.close()


def cmd_history(args) -> int:
    db = _open_db(args.db)
    try:
        for row in db.get_audit_history(args.limit):
            print(f"#{row['id']} {row['run_at']:%Y-%m-%d %H:%M} "
                  f"pass={row['pass_count']} warn={row['warn_count']} "
                  f"fail={row['fail_count']}")
        return 0
    finally:
        db.close()


async def _serve(args) -> None:
    import uvicorn
    from interface.api import create_app
    from pipeline.auditor import ConsistencyAuditor
    from pipeline.orchestrator import OutcomeOrchestrator
    from pipeline.scheduler import AuditScheduler

    db = _open_db(args.db)
    auditor = ConsistencyAuditor(db)
    app = create_app(db, OutcomeOrchestrator(db), auditor)

    scheduler = None
    if not args.no_scheduler:
        scheduler = AuditScheduler(auditor, loop=asyncio.get_running_loop())
        scheduler.schedule_audit()
        scheduler.start()

    config = uvicorn.Config(app, host=args.host, port=args.port,
                            log_level="warning", loop="asyncio")
    server = uvicorn.Server(config)
    # 信号由本进程统一处理
    server.install_signal_handlers = lambda: None

    loop = asyncio.get_running_loop()

    def signal_handler(signum):
        logger.info(f"收到信号 {signum}，正在关闭服务...")
        server.should_exit = True

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler, sig)

    logger.info(f"服务已启动: http://{args.host}:{args.port}")
    try:
        await server.serve()
    finally:
        logger.info("正在清理资源...")
        if scheduler is not None:
            try:
                scheduler.stop()
            except Exception as e:
                logger.warning(f"停止调度器时出错: {e}")
        db.close()
        logger.info("服务已停止")


def cmd_serve(args) -> int:
    asyncio.run(_serve(args))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="体验课销售漏斗")
    parser.add_argument("--db", default=None,
                        help="数据库连接 URL（默认读取 DATABASE_URL）")
    parser.add_argument("--log-level", default=settings.log_level,
                        help=f"日志级别 (默认: {settings.log_level})")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="创建数据库表")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("audit", help="执行一致性审计")
    p.add_argument("--save", action="store_true", help="保存审计汇总")
    p.add_argument("--fix-all", action="store_true",
                   help="审计后执行所有可用修复")
    p.set_defaults(func=cmd_audit)

    p = sub.add_parser("fix", help="执行一个修复动作")
    p.add_argument("action", help="修复动作，例如 fix_outcome_status_sync")
    p.set_defaults(func=cmd_fix)

    p = sub.add_parser("history", help="查看最近的审计汇总")
    p.add_argument("--limit", type=int, default=10)
    p.set_defaults(func=cmd_history)

    p = sub.add_parser("serve", help="启动 HTTP 服务和每日审计")
    p.add_argument("--host", default=settings.api_host,
                   help=f"监听地址 (默认: {settings.api_host})")
    p.add_argument("--port", type=int, default=settings.api_port,
                   help=f"监听端口 (默认: {settings.api_port})")
    p.add_argument("--no-scheduler", action="store_true",
                   help="不启动每日审计")
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    _setup_logging(args.log_level)
    return args.func(args)


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n已停止。")
