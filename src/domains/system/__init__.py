"""System Domain - host diagnostics and whitelisted commands.

Demonstrates the CLI-based adapter pattern. Caller-supplied commands
pass the CommandPolicy and are then executed without a shell.
"""

import os
import platform
import shlex
import socket
from typing import Any, Literal, Optional

import aiofiles
from pydantic import Field

from shared.logging import get_logger
from shared.models import ToolArguments, ToolCategory, ToolDescriptor, ToolResult, ToolResultStatus
from domains.base import CLIAdapter
from mcp_server.policy import CommandPolicy
from mcp_server.registry import ToolRegistry

logger = get_logger(__name__)

# Fixed diagnostic commands get a shorter leash than caller commands
DIAGNOSTIC_TIMEOUT_SECONDS = 10.0
VOLTAGE_TIMEOUT_SECONDS = 5.0
THERMAL_ZONE_PATH = "/sys/class/thermal/thermal_zone0/temp"
PROC_UPTIME_PATH = "/proc/uptime"


class RunCommandArguments(ToolArguments):
    command: str = Field(..., description="The command to run (must be in whitelist)")


class GetProcessesArguments(ToolArguments):
    limit: int = Field(default=20, ge=1, description="Maximum number of processes to return (default: 20)")
    sort_by: Literal["cpu", "memory"] = Field(
        default="cpu",
        alias="sortBy",
        description="Sort by CPU or memory usage (default: cpu)"
    )


def _megabytes(value: int) -> str:
    return f"{round(value / 1024 / 1024)} MB"


def _memory_info() -> Optional[dict[str, str]]:
    try:
        page_size = os.sysconf("SC_PAGE_SIZE")
        total = os.sysconf("SC_PHYS_PAGES") * page_size
        free = os.sysconf("SC_AVPHYS_PAGES") * page_size
    except (AttributeError, ValueError, OSError):
        return None
    return {
        "total": _megabytes(total),
        "free": _megabytes(free),
        "used": _megabytes(total - free),
    }


def _format_uptime(seconds: float) -> str:
    return f"{int(seconds // 3600)}h {int((seconds % 3600) // 60)}m"


class SystemAdapter(CLIAdapter):
    """
    System domain adapter.

    Provides tools for:
    - Host information (memory, load, temperature)
    - Running whitelisted commands
    - Process and disk usage listings
    """

    category = ToolCategory.SYSTEM

    def __init__(self, policy: CommandPolicy, timeout_seconds: float = 30.0) -> None:
        super().__init__(timeout_seconds)
        self.policy = policy

    def descriptors(self) -> list[ToolDescriptor]:
        allowed = ", ".join(self.policy.allowed_commands) or "(none)"
        return [
            self._tool(
                "get_system_info",
                "Get comprehensive system information about the host",
                self.get_system_info,
            ),
            self._tool(
                "run_command",
                f"Run a whitelisted system command. Allowed commands: {allowed}",
                self.run_command,
                RunCommandArguments,
            ),
            self._tool(
                "get_processes",
                "Get a list of running processes with resource usage",
                self.get_processes,
                GetProcessesArguments,
            ),
            self._tool(
                "get_disk_usage",
                "Get disk usage information for all mounted filesystems",
                self.get_disk_usage,
            ),
        ]

    async def _read_first_line(self, path: str) -> Optional[str]:
        try:
            async with aiofiles.open(path, "r") as f:
                return (await f.readline()).strip()
        except OSError:
            return None

    async def get_system_info(self, args: Any) -> ToolResult:
        info: dict[str, Any] = {
            "hostname": socket.gethostname(),
            "platform": platform.system().lower(),
            "arch": platform.machine(),
            "release": platform.release(),
        }

        uptime = await self._read_first_line(PROC_UPTIME_PATH)
        if uptime:
            info["uptime"] = _format_uptime(float(uptime.split()[0]))

        memory = _memory_info()
        if memory:
            info["memory"] = memory

        info["cpus"] = os.cpu_count()
        if hasattr(os, "getloadavg"):
            info["loadAvg"] = list(os.getloadavg())

        # Raspberry Pi specifics, absent elsewhere
        temp = await self._read_first_line(THERMAL_ZONE_PATH)
        if temp and temp.lstrip("-").isdigit():
            info["cpuTemp"] = f"{int(temp) / 1000:.1f}°C"

        try:
            stdout, _, returncode = await self._run_command(
                ["vcgencmd", "measure_volts", "core"], timeout=VOLTAGE_TIMEOUT_SECONDS
            )
            if returncode == 0 and stdout.strip():
                info["coreVoltage"] = stdout.strip()
        except (OSError, TimeoutError):
            pass

        return self._json("get_system_info", info)

    async def run_command(self, args: RunCommandArguments) -> ToolResult:
        decision = self.policy.evaluate(args.command)
        if not decision:
            return self._denied(
                "run_command",
                decision,
                hint=f"Allowed commands: {', '.join(self.policy.allowed_commands)}"
            )

        try:
            argv = shlex.split(decision.target)
        except ValueError as e:
            return self._error("run_command", f"Command failed: {e}", code="INVALID_COMMAND")

        try:
            stdout, stderr, returncode = await self._run_command(argv)
        except TimeoutError as e:
            return self._error("run_command", str(e), code="TIMEOUT", status=ToolResultStatus.TIMEOUT)
        except OSError as e:
            return self._error("run_command", f"Command failed: {e}", code="COMMAND_FAILED")

        output = stdout + (f"\nSTDERR:\n{stderr}" if stderr else "")

        if returncode != 0:
            logger.info("Command exited non-zero", command=decision.target, returncode=returncode)
            return self._error(
                "run_command",
                f"Command failed with exit code {returncode}\n{output}".rstrip(),
                code="COMMAND_FAILED"
            )

        return self._success("run_command", output or "(no output)")

    async def _diagnostic(self, tool_name: str, argv: list[str], label: str) -> tuple[Optional[str], Optional[ToolResult]]:
        try:
            stdout, stderr, returncode = await self._run_command(argv, timeout=DIAGNOSTIC_TIMEOUT_SECONDS)
        except TimeoutError as e:
            return None, self._error(tool_name, f"Failed to get {label}: {e}", code="TIMEOUT", status=ToolResultStatus.TIMEOUT)
        except OSError as e:
            return None, self._error(tool_name, f"Failed to get {label}: {e}", code="COMMAND_FAILED")

        if returncode != 0:
            return None, self._error(tool_name, f"Failed to get {label}: {stderr.strip()}", code="COMMAND_FAILED")
        return stdout, None

    async def get_processes(self, args: GetProcessesArguments) -> ToolResult:
        sort_flag = "--sort=-%mem" if args.sort_by == "memory" else "--sort=-%cpu"
        stdout, failure = await self._diagnostic("get_processes", ["ps", "aux", sort_flag], "processes")
        if failure:
            return failure

        # Header plus the requested number of rows
        lines = stdout.splitlines()[: args.limit + 1]
        return self._success("get_processes", "\n".join(lines))

    async def get_disk_usage(self, args: Any) -> ToolResult:
        stdout, failure = await self._diagnostic("get_disk_usage", ["df", "-h"], "disk usage")
        if failure:
            return failure
        return self._success("get_disk_usage", stdout)


def register_system_domain(
    registry: ToolRegistry,
    policy: CommandPolicy,
    timeout_seconds: float = 30.0
) -> SystemAdapter:
    """Register the system domain with the gateway."""
    adapter = SystemAdapter(policy, timeout_seconds)
    adapter.register(registry)
    return adapter
