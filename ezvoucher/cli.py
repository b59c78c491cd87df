"""
Command line entry point.

Usage:
    # Upload file 3 from the working folder
    ezvoucher voucher --file 3 --work-dir "D:/vouchers"

    # Upload files 1 to 17
    ezvoucher voucher --start 1 --end 17

    # Export receipts and filter pending vendor invoices
    ezvoucher invoice

    # List what a range would pick up, without a browser
    ezvoucher scan --start 1 --end 17

    # Run the API for the desktop shell
    ezvoucher serve --port 8000
"""
import argparse
import asyncio
import sys

from ezvoucher.engine.batch_runner import BatchRunner
from ezvoucher.engine.files import scan_range
from ezvoucher.engine.models import Credentials, WorkflowResult
from ezvoucher.utils.config import Settings
from ezvoucher.utils.logger import get_logger, setup_logging

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130

log = get_logger("cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ezvoucher", description="D365 voucher and invoice automation")
    parser.add_argument(
        "--work-dir",
        type=str,
        help="Folder holding the numbered voucher spreadsheets",
    )
    parser.add_argument(
        "--headless",
        action="store_true",
        help="Run the browser without a window",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    voucher = subparsers.add_parser("voucher", help="Upload voucher spreadsheets")
    voucher.add_argument("--file", type=int, help="Upload only this file number")
    voucher.add_argument("--start", type=int, help="First file number of the range")
    voucher.add_argument("--end", type=int, help="Last file number of the range")

    subparsers.add_parser("invoice", help="Run the purchase receipt and vendor invoice flow")

    scan = subparsers.add_parser("scan", help="List the files a range would process")
    scan.add_argument("--start", type=int, help="First file number")
    scan.add_argument("--end", type=int, help="Last file number")

    serve = subparsers.add_parser("serve", help="Run the HTTP and WebSocket API")
    serve.add_argument("--host", type=str, default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    if args.work_dir:
        settings = settings.with_work_dir(args.work_dir)
    if args.headless:
        settings.headless = True
    return settings


def print_scan(rows: list[dict]):
    print(f"{'No.':>4}  {'File':<50}  Label")
    print("-" * 72)
    for row in rows:
        if row["file"] is None:
            print(f"{row['number']:>4}  {'(missing)':<50}  -")
        elif row["error"]:
            print(f"{row['number']:>4}  {row['file']:<50}  ERROR: {row['error']}")
        else:
            print(f"{row['number']:>4}  {row['file']:<50}  {row['label']}")


def print_result(result: WorkflowResult):
    marker = "✅" if result.success else "❌"
    print(f"\n{marker} {result.message}")
    for path in result.details.get("reports", []):
        print(f"   📊 {path}")


async def run_voucher(settings: Settings, args: argparse.Namespace) -> WorkflowResult:
    runner = BatchRunner(settings, Credentials.from_env())
    if args.file is not None:
        return await runner.run_single_file(args.file)
    start = args.start if args.start is not None else settings.batch_start
    end = args.end if args.end is not None else settings.batch_end
    return await runner.run_range(start, end)


async def run_invoice(settings: Settings) -> WorkflowResult:
    runner = BatchRunner(settings, Credentials.from_env())
    try:
        result = await runner.run_invoices()
        print_result(result)
        if runner.session is not None and runner.session.is_open:
            print("\n🪟 Browser left open for review. Close it to exit.")
            await runner.session.wait_until_closed()
        return result
    finally:
        await runner.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "voucher" and args.file is not None and (args.start is not None or args.end is not None):
        parser.error("--file cannot be combined with --start/--end")

    settings = load_settings(args)
    setup_logging(debug=args.debug, log_file=settings.log_file)

    if args.command == "scan":
        if not settings.work_dir:
            print("Working folder is not set (use --work-dir or EZV_WORK_DIR)", file=sys.stderr)
            return EXIT_FAILED
        start = args.start if args.start is not None else settings.batch_start
        end = args.end if args.end is not None else settings.batch_end
        print_scan(scan_range(settings.work_dir, start, end))
        return EXIT_OK

    if args.command == "serve":
        import uvicorn
        uvicorn.run("app:app", host=args.host, port=args.port)
        return EXIT_OK

    try:
        if args.command == "voucher":
            result = asyncio.run(run_voucher(settings, args))
        else:
            result = asyncio.run(run_invoice(settings))
    except KeyboardInterrupt:
        log.warning("Interrupted by user")
        print("\n⏹️  Interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED

    if args.command == "voucher":
        print_result(result)
    return EXIT_OK if result.success else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
