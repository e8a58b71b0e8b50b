import asyncio
import logging
import mimetypes
import os
import shutil
from contextlib import asynccontextmanager
from typing import Optional

import aiofiles
import aiofiles.os
from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    File,
    HTTPException,
    Query,
    Request,
    UploadFile,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from pypdf import PdfReader

from open_workbench import env
from open_workbench.exceptions import LaunchError, PathOutsideProject, ProjectNotFound
from open_workbench.projects import ProjectResolver
from open_workbench.registry import ExecutionRegistry, ExecutionStatus
from open_workbench.reporter import ExecutionReporter
from open_workbench.runner import PipeRunner
from open_workbench.supervisor import LifecycleSupervisor

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


async def verify_api_key(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
):
    api_key = request.app.state.api_key
    if not api_key:
        return
    if not credentials or credentials.credentials != api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


def get_projects(request: Request) -> ProjectResolver:
    return request.app.state.projects


def get_supervisor(request: Request) -> LifecycleSupervisor:
    return request.app.state.supervisor


def get_reporter(request: Request) -> ExecutionReporter:
    return request.app.state.reporter


def _resolve_path(projects: ProjectResolver, project: str, path: str) -> str:
    try:
        return projects.resolve_path(project, path)
    except ProjectNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PathOutsideProject as e:
        raise HTTPException(status_code=400, detail=str(e))


router = APIRouter(dependencies=[Depends(verify_api_key)])


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class ProjectRequest(BaseModel):
    name: str = Field(
        ...,
        description="Project identifier. Letters, digits, '.', '_' and '-'.",
        json_schema_extra={"examples": ["my-app"]},
    )


class ExecRequest(BaseModel):
    command: str = Field(
        ...,
        description="Shell command to execute. Supports chaining (&&, ||, ;), pipes (|), and redirections.",
        json_schema_extra={"examples": ["echo hello", "npm install && npm test"]},
    )
    cwd: Optional[str] = Field(
        None,
        description="Working directory relative to the project root. Defaults to the project root.",
    )
    env: Optional[dict[str, str]] = Field(
        None,
        description="Extra environment variables merged into the subprocess environment.",
    )


class InputRequest(BaseModel):
    input: str = Field(
        ...,
        description="Text to send to the process's stdin. Include newline characters as needed.",
    )


class WriteRequest(BaseModel):
    path: str = Field(
        ...,
        description="Path relative to the project root. Parent directories are created automatically.",
    )
    content: str = Field(
        ...,
        description="Text content to write to the file.",
    )


class ReplacementChunk(BaseModel):
    target: str = Field(
        ...,
        description="Exact string to find. Must match precisely, including whitespace.",
    )
    replacement: str = Field(
        ...,
        description="Content to replace the target with.",
    )
    start_line: Optional[int] = Field(
        None,
        description="Narrow the search to lines at or after this (1-indexed).",
        ge=1,
    )
    end_line: Optional[int] = Field(
        None,
        description="Narrow the search to lines at or before this (1-indexed).",
        ge=1,
    )
    allow_multiple: bool = Field(
        False,
        description="If true, replaces all occurrences. If false, errors when multiple matches are found.",
    )


class MkdirRequest(BaseModel):
    path: str = Field(
        ...,
        description="Directory path relative to the project root. Parents are created automatically.",
    )


class ReplaceRequest(BaseModel):
    path: str = Field(
        ...,
        description="Path to the file to modify, relative to the project root.",
    )
    replacements: list[ReplacementChunk] = Field(
        ...,
        description="List of find-and-replace operations to apply sequentially.",
    )


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


@router.get(
    "/projects",
    operation_id="list_projects",
    summary="List projects",
)
async def list_projects(projects: ProjectResolver = Depends(get_projects)):
    names = await asyncio.to_thread(projects.list)
    return {"projects": names}


@router.post(
    "/projects",
    operation_id="create_project",
    summary="Create a project",
    description="Create an empty project workspace. Succeeds if it already exists.",
)
async def create_project(
    request: ProjectRequest, projects: ProjectResolver = Depends(get_projects)
):
    try:
        path = await asyncio.to_thread(projects.create, request.name)
    except ProjectNotFound:
        raise HTTPException(status_code=400, detail="Invalid project name")
    except OSError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"name": request.name, "path": path}


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


@router.get(
    "/projects/{project}/files/list",
    operation_id="list_files",
    summary="List directory contents",
    description="Return a structured listing of files and directories at the given project path.",
    responses={404: {"description": "Directory not found."}},
)
async def list_files(
    project: str,
    directory: str = Query(".", description="Directory path to list."),
    projects: ProjectResolver = Depends(get_projects),
):
    target = _resolve_path(projects, project, directory)
    if not await aiofiles.os.path.isdir(target):
        raise HTTPException(status_code=404, detail="Directory not found")

    def _list_sync():
        entries = []
        for name in sorted(os.listdir(target)):
            full_path = os.path.join(target, name)
            try:
                file_stat = os.stat(full_path)
                entries.append(
                    {
                        "name": name,
                        "type": "directory" if os.path.isdir(full_path) else "file",
                        "size": file_stat.st_size,
                        "modified": file_stat.st_mtime,
                    }
                )
            except OSError:
                continue
        return entries

    entries = await asyncio.to_thread(_list_sync)
    return {"dir": target, "entries": entries}


@router.get(
    "/projects/{project}/files/read",
    operation_id="read_file",
    summary="Read a file",
    description="Return the contents of a file. Text files return JSON with a content string; PDFs return their extracted text. Supported binary types (configurable, default: image/*) return the raw binary with the appropriate Content-Type. Other binary types are rejected.",
    responses={
        404: {"description": "File not found."},
        415: {"description": "Unsupported binary file type."},
    },
)
async def read_file(
    project: str,
    request: Request,
    path: str = Query(..., description="Path to the file to read."),
    start_line: Optional[int] = Query(
        None, description="First line to return (1-indexed, inclusive).", ge=1
    ),
    end_line: Optional[int] = Query(
        None, description="Last line to return (1-indexed, inclusive).", ge=1
    ),
    projects: ProjectResolver = Depends(get_projects),
):
    target = _resolve_path(projects, project, path)
    if not await aiofiles.os.path.isfile(target):
        raise HTTPException(status_code=404, detail="File not found")

    try:
        async with aiofiles.open(target, "r", errors="strict") as f:
            content = await f.read()
            lines = content.splitlines(keepends=True)
    except (UnicodeDecodeError, ValueError):
        size = (await aiofiles.os.stat(target)).st_size
        mime, _ = mimetypes.guess_type(target)
        mime = mime or "application/octet-stream"

        if mime == "application/pdf":
            reader = await asyncio.to_thread(PdfReader, target)
            text = "\n".join(page.extract_text() or "" for page in reader.pages)
            lines = text.splitlines(keepends=True)
        elif any(
            mime.startswith(prefix) for prefix in request.app.state.binary_mime_prefixes
        ):
            async with aiofiles.open(target, "rb") as f:
                raw = await f.read()
            return Response(content=raw, media_type=mime)
        else:
            raise HTTPException(
                status_code=415,
                detail=f"Unsupported binary file type: {mime} ({size} bytes)",
            )

    start = (start_line or 1) - 1
    end = end_line or len(lines)
    return {
        "path": target,
        "total_lines": len(lines),
        "content": "".join(lines[start:end]),
    }


@router.post(
    "/projects/{project}/files/write",
    operation_id="write_file",
    summary="Write a file",
    description="Write text content to a file. Creates parent directories automatically. Overwrites if the file already exists.",
)
async def write_file(
    project: str,
    request: WriteRequest,
    projects: ProjectResolver = Depends(get_projects),
):
    target = _resolve_path(projects, project, request.path)
    try:
        await aiofiles.os.makedirs(os.path.dirname(target), exist_ok=True)
        async with aiofiles.open(target, "w") as f:
            await f.write(request.content)
    except OSError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"path": target, "size": len(request.content.encode())}


@router.post(
    "/projects/{project}/files/replace",
    operation_id="replace_file_content",
    summary="Replace content in a file",
    description="Find and replace exact strings in a file. Supports multiple replacements in one call with optional line range narrowing.",
    responses={
        404: {"description": "File not found."},
        400: {"description": "Target string not found or ambiguous match."},
    },
)
async def replace_file_content(
    project: str,
    request: ReplaceRequest,
    projects: ProjectResolver = Depends(get_projects),
):
    target = _resolve_path(projects, project, request.path)
    if not await aiofiles.os.path.isfile(target):
        raise HTTPException(status_code=404, detail="File not found")

    try:
        async with aiofiles.open(target, "r", errors="replace") as f:
            content = await f.read()
    except OSError as e:
        raise HTTPException(status_code=400, detail=str(e))

    for chunk in request.replacements:
        if chunk.start_line or chunk.end_line:
            lines = content.splitlines(keepends=True)
            start = (chunk.start_line or 1) - 1
            end = chunk.end_line or len(lines)
            search_region = "".join(lines[start:end])
        else:
            search_region = content

        count = search_region.count(chunk.target)
        if count == 0:
            raise HTTPException(
                status_code=400,
                detail=f"Target string not found: {chunk.target[:100]!r}",
            )
        if count > 1 and not chunk.allow_multiple:
            raise HTTPException(
                status_code=400,
                detail=f"Found {count} occurrences of target string but allow_multiple is false",
            )

        if chunk.start_line or chunk.end_line:
            new_region = search_region.replace(chunk.target, chunk.replacement)
            lines[start:end] = [new_region]
            content = "".join(lines)
        else:
            content = content.replace(chunk.target, chunk.replacement)

    try:
        async with aiofiles.open(target, "w") as f:
            await f.write(content)
    except OSError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"path": target, "size": len(content.encode())}


@router.post(
    "/projects/{project}/files/mkdir",
    operation_id="make_directory",
    summary="Create a directory",
)
async def mkdir(
    project: str,
    request: MkdirRequest,
    projects: ProjectResolver = Depends(get_projects),
):
    target = _resolve_path(projects, project, request.path)
    try:
        await aiofiles.os.makedirs(target, exist_ok=True)
    except OSError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"path": target}


@router.delete(
    "/projects/{project}/files/delete",
    operation_id="delete_entry",
    summary="Delete a file or directory",
    responses={404: {"description": "Path not found."}},
)
async def delete_entry(
    project: str,
    path: str = Query(..., description="Path to delete."),
    projects: ProjectResolver = Depends(get_projects),
):
    target = _resolve_path(projects, project, path)
    if target == projects.resolve_path(project):
        raise HTTPException(status_code=400, detail="Refusing to delete the project root")
    if not await aiofiles.os.path.exists(target):
        raise HTTPException(status_code=404, detail="Path not found")

    is_dir = await aiofiles.os.path.isdir(target)
    try:
        if is_dir:
            await asyncio.to_thread(shutil.rmtree, target)
        else:
            await aiofiles.os.remove(target)
    except OSError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"path": target, "type": "directory" if is_dir else "file"}


@router.post(
    "/projects/{project}/files/upload",
    operation_id="upload_file",
    summary="Upload a file",
    description="Save a file into the project. Provide a `url` to fetch remotely, or send the file directly via multipart form data.",
)
async def upload_file(
    project: str,
    directory: str = Query(".", description="Destination directory inside the project."),
    url: Optional[str] = Query(
        None,
        description="URL to download the file from. If omitted, expects a multipart file upload.",
    ),
    file: Optional[UploadFile] = File(
        None, description="The file to upload (if no URL provided)."
    ),
    projects: ProjectResolver = Depends(get_projects),
):
    target_dir = _resolve_path(projects, project, directory)
    if url:
        import httpx
        from urllib.parse import urlparse

        async with httpx.AsyncClient(follow_redirects=True) as client:
            response = await client.get(url)
            response.raise_for_status()
        content = response.content
        filename = os.path.basename(urlparse(url).path) or "download"
    elif file:
        content = await file.read()
        filename = os.path.basename(file.filename or "") or "upload"
    else:
        raise HTTPException(
            status_code=400, detail="Provide either 'url' or a file upload."
        )

    try:
        await aiofiles.os.makedirs(target_dir, exist_ok=True)
        path = os.path.join(target_dir, filename)
        async with aiofiles.open(path, "wb") as f:
            await f.write(content)
    except OSError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"path": path, "size": len(content)}


# ---------------------------------------------------------------------------
# Execute
# ---------------------------------------------------------------------------


@router.get(
    "/execute",
    operation_id="list_executions",
    summary="List executions",
    description="Returns the running executions. With include_finished, also returns recently finished ones.",
)
async def list_executions(
    include_finished: bool = Query(
        False, description="Include executions that finished recently."
    ),
    reporter: ExecutionReporter = Depends(get_reporter),
):
    return reporter.list_executions(include_finished=include_finished)


@router.post(
    "/projects/{project}/execute",
    operation_id="run_command",
    summary="Execute a command",
    description="Run a shell command inside a project in the background and return an execution ID. Commands are killed once they exceed the server's execution timeout.",
    responses={
        404: {"description": "Project not found."},
        400: {"description": "The command could not be started."},
    },
)
async def execute(
    project: str,
    request: ExecRequest,
    wait: Optional[float] = Query(
        None,
        description="Seconds to wait for the command to finish before returning. Null to return immediately.",
        ge=0,
        le=300,
    ),
    projects: ProjectResolver = Depends(get_projects),
    supervisor: LifecycleSupervisor = Depends(get_supervisor),
    reporter: ExecutionReporter = Depends(get_reporter),
):
    working_directory = _resolve_path(projects, project, request.cwd or ".")
    try:
        execution = await supervisor.start(
            working_directory, request.command, request.env
        )
    except LaunchError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if wait is not None:
        await supervisor.wait_for(execution, wait)

    return reporter.get_status(execution.id)


@router.get(
    "/execute/{execution_id}/status",
    operation_id="get_execution_status",
    summary="Get execution status",
    description="Returns status, exit code and the accumulated stdout/stderr of an execution.",
    responses={404: {"description": "Execution not found."}},
)
async def get_status(
    execution_id: str,
    wait: Optional[float] = Query(
        None,
        description="Seconds to wait for the execution to finish before returning. Null to return immediately.",
        ge=0,
        le=300,
    ),
    supervisor: LifecycleSupervisor = Depends(get_supervisor),
    reporter: ExecutionReporter = Depends(get_reporter),
):
    execution = supervisor.registry.get(execution_id)
    if execution is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    if wait is not None and execution.status == ExecutionStatus.RUNNING:
        await supervisor.wait_for(execution, wait)
    return reporter.get_status(execution_id)


@router.get(
    "/execute/{execution_id}/output",
    operation_id="get_execution_output",
    summary="Page through execution output",
    description="Returns logged output entries. Use next_offset from the previous response to get only new output.",
    responses={404: {"description": "Execution not found."}},
)
async def get_output(
    execution_id: str,
    offset: int = Query(0, description="Number of output entries to skip.", ge=0),
    tail: Optional[int] = Query(
        None, description="Return only the last N output entries.", ge=1
    ),
    reporter: ExecutionReporter = Depends(get_reporter),
):
    result = await reporter.read_output(execution_id, offset=offset, tail=tail)
    if result is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    return result


@router.post(
    "/execute/{execution_id}/input",
    operation_id="send_execution_input",
    summary="Send input to a running command",
    description="Write text to the process's stdin. Include newline characters as needed.",
    responses={
        404: {"description": "Execution not found."},
        400: {"description": "Process has already exited or stdin is closed."},
    },
)
async def send_input(
    execution_id: str,
    body: InputRequest,
    supervisor: LifecycleSupervisor = Depends(get_supervisor),
):
    runner = supervisor.registry.lookup(execution_id)
    if runner is None:
        if supervisor.registry.get(execution_id) is None:
            raise HTTPException(status_code=404, detail="Execution not found")
        raise HTTPException(status_code=400, detail="Process has already exited")

    try:
        runner.write_input(body.input.encode())
        if isinstance(runner, PipeRunner):
            await runner.drain_input()
    except (BrokenPipeError, ConnectionResetError, OSError):
        raise HTTPException(status_code=400, detail="Process stdin is closed")

    return {"status": "ok"}


@router.delete(
    "/execute/{execution_id}",
    operation_id="stop_execution",
    summary="Stop an execution",
    description="Kill the execution's process tree immediately. Stopping an unknown or already finished execution succeeds.",
)
async def stop_execution(
    execution_id: str,
    supervisor: LifecycleSupervisor = Depends(get_supervisor),
):
    stopped = await supervisor.stop(execution_id)
    return {"id": execution_id, "status": "stopped", "stopped": stopped}


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def create_app(
    projects_dir: str = env.PROJECTS_DIR,
    log_dir: Optional[str] = env.LOG_DIR,
    execution_timeout: float = env.EXECUTION_TIMEOUT,
    finished_retention: float = env.FINISHED_RETENTION,
    api_key: str = env.API_KEY,
) -> FastAPI:
    """Compose the registry, supervisor and HTTP routes into one application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        registry = ExecutionRegistry(finished_retention=finished_retention)
        app.state.supervisor = LifecycleSupervisor(
            registry, timeout=execution_timeout, log_dir=log_dir
        )
        app.state.reporter = ExecutionReporter(registry)
        logger.info("Serving projects from %s", app.state.projects.root)
        try:
            yield
        finally:
            await app.state.supervisor.shutdown()

    app = FastAPI(
        title="Open Workbench",
        description="A remote project workspace and command execution API.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.api_key = api_key
    app.state.projects = ProjectResolver(projects_dir)
    app.state.binary_mime_prefixes = env.BINARY_FILE_MIME_PREFIXES

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in env.CORS_ALLOWED_ORIGINS.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get(
        "/health",
        operation_id="health_check",
        summary="Health check",
        description="Returns service status. No authentication required.",
    )
    async def health():
        return {"status": "ok"}

    app.include_router(router)
    return app


app = create_app()
