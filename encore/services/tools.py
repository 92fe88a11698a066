"""
External tool helpers - yt-dlp / ffmpeg argument templates and subprocess runner
"""
import asyncio
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from encore.errors import ProcessSpawnError, TransientNetworkError, classify_tool_error

logger = logging.getLogger(__name__)

AUDIO_FORMAT = "bestaudio[ext=webm]/bestaudio[ext=m4a]/bestaudio[acodec^=opus]/bestaudio/best"
OUTPUT_BITRATE = "160k"
OUTPUT_SAMPLE_RATE = "48000"

PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)%")
ETA_RE = re.compile(r"ETA\s+(\d+):(\d{2})(?::(\d{2}))?")
TIME_RE = re.compile(r"time=(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")


def valid_cookie_file(path: str | Path | None) -> bool:
    """True if the file looks like a Netscape cookie jar yt-dlp can use."""
    if not path:
        return False
    p = Path(path)
    try:
        if not p.is_file() or p.stat().st_size == 0:
            return False
        text = p.read_text(encoding="utf-8", errors="ignore")
    except OSError as e:
        logger.warning(f"Cookie file {p} unreadable: {e}")
        return False
    if "Netscape HTTP Cookie File" in text:
        return True
    return any(
        line.count("\t") >= 6 and ".youtube.com" in line
        for line in text.splitlines()
        if line and not line.startswith("#")
    )


def build_download_args(
    url: str,
    output: Path,
    socket_timeout: int = 8,
    retries: int = 1,
    cookies_path: str | None = None,
    po_token: str | None = None,
) -> list[str]:
    """Fixed yt-dlp argument template for a single-track audio download."""
    args = [
        "--format", AUDIO_FORMAT,
        "--no-playlist",
        "--no-warnings",
        "--no-part",
        "--newline",
        "--force-ipv4",
        "--socket-timeout", str(socket_timeout),
        "--retries", str(retries),
        "--fragment-retries", str(retries),
        "--output", str(output),
    ]
    if valid_cookie_file(cookies_path):
        args += ["--cookies", str(cookies_path)]
    if po_token:
        args += ["--extractor-args", f"youtube:po_token={po_token}"]
    args.append(url)
    return args


def build_transcode_args(source: Path, output: Path) -> list[str]:
    """Fixed ffmpeg argument template: normalize to stereo MP3."""
    return [
        "-hide_banner",
        "-nostdin",
        "-y",
        "-i", str(source),
        "-vn",
        "-acodec", "libmp3lame",
        "-b:a", OUTPUT_BITRATE,
        "-ar", OUTPUT_SAMPLE_RATE,
        "-ac", "2",
        str(output),
    ]


def build_metadata_args(url: str, socket_timeout: int = 8) -> list[str]:
    return ["--dump-json", "--no-playlist", "--no-warnings", "--skip-download",
            "--socket-timeout", str(socket_timeout), url]


def parse_download_progress(line: str) -> tuple[float | None, int | None]:
    """Extract (percent, eta_seconds) from a yt-dlp progress line."""
    percent = None
    eta = None
    match = PERCENT_RE.search(line)
    if match:
        percent = min(100.0, float(match.group(1)))
    match = ETA_RE.search(line)
    if match:
        first, second, third = match.groups()
        if third is not None:
            eta = int(first) * 3600 + int(second) * 60 + int(third)
        else:
            eta = int(first) * 60 + int(second)
    return percent, eta


def parse_transcode_time(line: str) -> float | None:
    """Seconds of output written so far, from an ffmpeg status line."""
    match = TIME_RE.search(line)
    if not match:
        return None
    h, m, s = match.groups()
    return int(h) * 3600 + int(m) * 60 + float(s)


@dataclass
class ToolResult:
    returncode: int
    stdout: str
    stderr: str


async def spawn(program: str, args: list[str]) -> asyncio.subprocess.Process:
    """Start an external tool with piped output."""
    try:
        return await asyncio.create_subprocess_exec(
            program, *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError, OSError) as e:
        raise ProcessSpawnError(f"Could not start {program}: {e}") from e


async def kill(process: asyncio.subprocess.Process, wait: float = 2.0) -> None:
    """SIGKILL a process and wait briefly for it to exit."""
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=wait)
    except asyncio.TimeoutError:
        logger.warning(f"Process {process.pid} did not exit after kill")


async def _read_lines(stream: asyncio.StreamReader, on_line: Callable[[str], Awaitable[None] | None] | None,
                      sink: list[str]) -> None:
    """Read a stream splitting on both CR and LF (progress bars use CR)."""
    buffer = b""
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        buffer += chunk
        parts = re.split(rb"[\r\n]", buffer)
        buffer = parts.pop()
        for raw in parts:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            sink.append(line)
            if on_line is not None:
                result = on_line(line)
                if asyncio.iscoroutine(result):
                    await result
    tail = buffer.decode("utf-8", errors="replace").strip()
    if tail:
        sink.append(tail)
        if on_line is not None:
            result = on_line(tail)
            if asyncio.iscoroutine(result):
                await result


async def run_tool(
    program: str,
    args: list[str],
    timeout: float,
    on_line: Callable[[str], Awaitable[None] | None] | None = None,
    on_spawn: Callable[[asyncio.subprocess.Process], None] | None = None,
) -> ToolResult:
    """Run a tool to completion, feeding every output line to ``on_line``.

    Raises ProcessSpawnError if it cannot start and TransientNetworkError on
    timeout (after killing it). A non-zero exit is returned, not raised.
    """
    process = await spawn(program, args)
    if on_spawn is not None:
        on_spawn(process)
    out_lines: list[str] = []
    err_lines: list[str] = []

    async def _communicate() -> int:
        await asyncio.gather(
            _read_lines(process.stdout, on_line, out_lines),
            _read_lines(process.stderr, on_line, err_lines),
        )
        return await process.wait()

    try:
        returncode = await asyncio.wait_for(_communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await kill(process)
        raise TransientNetworkError(f"{Path(program).name} timed out after {timeout:.0f}s") from None
    except asyncio.CancelledError:
        await kill(process)
        raise
    return ToolResult(returncode, "\n".join(out_lines), "\n".join(err_lines))


async def dump_metadata(ytdlp_path: str, url: str, timeout: float, socket_timeout: int = 8) -> dict:
    """Ask yt-dlp for a URL's metadata as JSON."""
    result = await run_tool(ytdlp_path, build_metadata_args(url, socket_timeout), timeout)
    if result.returncode != 0:
        raise classify_tool_error(result.stderr, "metadata extraction failed")
    for line in result.stdout.splitlines():
        line = line.strip()
        if line.startswith("{"):
            return json.loads(line)
    raise classify_tool_error(result.stderr, "no metadata returned")
