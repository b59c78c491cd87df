import asyncio
import os
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable

from dotenv import load_dotenv, set_key
load_dotenv()

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from ezvoucher.engine.batch_runner import INVOICE_WORKFLOW, VOUCHER_WORKFLOW, BatchRunner
from ezvoucher.engine.files import scan_range
from ezvoucher.engine.models import Credentials, WorkflowResult
from ezvoucher.utils.config import Settings
from ezvoucher.utils.logger import get_logger, setup_logging

ENV_PATH = Path(".env")

log = get_logger("app")


class WebSocketLogHandler:
    def __init__(self):
        self.connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.connections:
            self.connections.remove(websocket)

    async def broadcast(self, message: dict):
        for connection in self.connections[:]:
            try:
                await connection.send_json(message)
            except Exception:
                self.disconnect(connection)


log_handler = WebSocketLogHandler()
settings = Settings.from_env()
credentials = Credentials.from_env()
workflow_task: asyncio.Task | None = None
workflow_running = False
active_runner: BatchRunner | None = None
kept_open_runner: BatchRunner | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(log_file=settings.log_file)
    yield
    await stop_workflow()
    if kept_open_runner:
        await kept_open_runner.close()


app = FastAPI(title="EZVoucher RPA", lifespan=lifespan)


def _persist(key: str, value: str):
    try:
        if not ENV_PATH.exists():
            ENV_PATH.touch()
        set_key(str(ENV_PATH), key, value)
    except OSError as e:
        log.warning("Could not write .env", key=key, error=str(e))


class CredentialsInput(BaseModel):
    username: str
    password: str


class FolderInput(BaseModel):
    path: str


class SingleFileInput(BaseModel):
    file_number: int


class RangeInput(BaseModel):
    start: int = 1
    end: int = 17


@app.get("/api/status")
async def get_status():
    return {
        "running": workflow_running,
        "workDir": str(settings.work_dir) if settings.work_dir else None,
        "credentialsConfigured": bool(credentials),
        "browserKeptOpen": kept_open_runner is not None,
    }


@app.get("/api/credentials")
async def check_credentials():
    return {
        "configured": bool(credentials),
        "username": credentials.username if credentials else None,
    }


@app.post("/api/credentials")
async def save_credentials(creds: CredentialsInput):
    global credentials
    if not creds.username.strip() or not creds.password.strip():
        return {"success": False, "error": "Username and password are required"}

    credentials = Credentials(creds.username.strip(), creds.password)
    os.environ["D365_USERNAME"] = credentials.username
    os.environ["D365_PASSWORD"] = credentials.password
    _persist("D365_USERNAME", credentials.username)
    _persist("D365_PASSWORD", credentials.password)
    await send_log("info", f"🔐 Credentials saved for {credentials.username}")
    return {"success": True, "username": credentials.username}


@app.post("/api/folder")
async def set_folder(folder: FolderInput):
    global settings
    path = Path(folder.path).expanduser()
    if not path.is_dir():
        return {"success": False, "error": f"Folder does not exist: {path}"}

    settings = settings.with_work_dir(path)
    _persist("EZV_WORK_DIR", str(path))
    await send_log("info", f"📁 Working folder set: {path}")
    return {"success": True, "path": str(path)}


@app.get("/api/files")
async def list_files(start: int | None = None, end: int | None = None):
    if not settings.work_dir:
        return {"success": False, "error": "Working folder is not set", "files": []}
    start = settings.batch_start if start is None else start
    end = settings.batch_end if end is None else end
    return {"success": True, "files": scan_range(settings.work_dir, start, end)}


@app.post("/api/voucher/single")
async def run_single(body: SingleFileInput):
    return await start_task(VOUCHER_WORKFLOW, lambda runner: runner.run_single_file(body.file_number))


@app.post("/api/voucher/range")
async def run_range(body: RangeInput):
    return await start_task(VOUCHER_WORKFLOW, lambda runner: runner.run_range(body.start, body.end))


@app.post("/api/invoice")
async def run_invoice():
    return await start_task(INVOICE_WORKFLOW, lambda runner: runner.run_invoices())


@app.post("/api/stop")
async def stop():
    stopped = await stop_workflow()
    return {"success": stopped}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await log_handler.connect(websocket)
    try:
        while True:
            msg = await websocket.receive_json()
            if msg.get("action") == "stop":
                await stop_workflow()
    except WebSocketDisconnect:
        log_handler.disconnect(websocket)


async def send_log(level: str, message: str, **kwargs):
    await log_handler.broadcast({
        "type": "log",
        "timestamp": datetime.now().strftime("%H:%M:%S"),
        "level": level,
        "message": message,
        "data": kwargs,
    })


async def send_task_status(task: str, status: str, message: str = ""):
    await log_handler.broadcast({
        "type": "task-status",
        "task": task,
        "status": status,
        "message": message,
        "timestamp": datetime.now().isoformat(),
    })


async def run_task(task: str, operation: Callable[[BatchRunner], Awaitable[WorkflowResult]]):
    global workflow_running, active_runner, kept_open_runner
    workflow_running = True

    if kept_open_runner:
        await kept_open_runner.close()
        kept_open_runner = None

    runner = BatchRunner(settings, credentials, log_callback=send_log, status_callback=send_task_status)
    active_runner = runner
    try:
        result = await operation(runner)
        await log_handler.broadcast({"type": "result", "task": task, **result.to_dict()})
        if runner.session is not None:
            kept_open_runner = runner
    except asyncio.CancelledError:
        await send_log("warning", "Task cancelled")
        await runner.close()
        await send_task_status(task, "error", "Cancelled by user")
    except Exception as e:
        log.exception("Task crashed", task=task)
        await send_log("error", f"Task failed: {e}")
        await runner.close()
        await send_task_status(task, "error", str(e))
    finally:
        workflow_running = False
        active_runner = None


async def start_task(task: str, operation: Callable[[BatchRunner], Awaitable[WorkflowResult]]) -> dict:
    global workflow_task

    if workflow_running:
        await send_log("warning", "A task is already running")
        return {"success": False, "error": "A task is already running"}

    workflow_task = asyncio.create_task(run_task(task, operation))
    return {"success": True, "task": task}


async def stop_workflow() -> bool:
    global workflow_task, workflow_running

    if workflow_task and workflow_running:
        workflow_running = False
        workflow_task.cancel()
        await send_log("warning", "Stopping task...")
        return True
    return False


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)
