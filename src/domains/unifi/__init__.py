"""UniFi Domain - network controller monitoring and management.

Talks to the controller's network API through the local proxy,
authenticating with an ``X-API-KEY`` header. Demonstrates the
REST-based adapter pattern.
"""

from datetime import datetime, timezone
from typing import Any, Literal, Optional

import httpx
from pydantic import Field, field_validator
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.config import UniFiSettings
from shared.errors import ToolExecutionError
from shared.logging import get_logger
from shared.models import ToolArguments, ToolCategory, ToolDescriptor, ToolResult
from domains.base import RESTAdapter
from mcp_server.registry import ToolRegistry

logger = get_logger(__name__)

MAC_PATTERN = r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$"
BYTES_PER_GB = 1024 ** 3
NOT_CONFIGURED = "UniFi not configured. Set UNIFI_HOST and UNIFI_API_KEY environment variables."


class MacArguments(ToolArguments):
    mac: str = Field(..., pattern=MAC_PATTERN, description="MAC address (format: aa:bb:cc:dd:ee:ff)")

    @field_validator("mac")
    @classmethod
    def lower_mac(cls, v: str) -> str:
        return v.lower()


class SetClientNameArguments(MacArguments):
    name: str = Field(..., min_length=1, description="New name/alias for the client")


class ClientsArguments(ToolArguments):
    include_history: bool = Field(default=False, description="Include recently disconnected clients (default: false)")


class AlertsArguments(ToolArguments):
    limit: int = Field(default=50, ge=1, description="Maximum number of alerts to return (default: 50)")
    archived: bool = Field(default=False, description="Include archived alerts (default: false)")


class TrafficArguments(ToolArguments):
    type: Literal["hourly", "daily", "monthly"] = Field(default="hourly", description="Time period for stats (default: hourly)")
    limit: int = Field(default=24, ge=1, description="Number of data points to return (default: 24)")


def _hours_minutes(seconds: Optional[int]) -> str:
    if not seconds:
        return "N/A"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


def _days_hours(seconds: Optional[int]) -> str:
    if not seconds:
        return "N/A"
    return f"{seconds // 86400}d {(seconds % 86400) // 3600}h"


def _iso(epoch_seconds: Optional[float]) -> str:
    if not epoch_seconds:
        return "Unknown"
    return datetime.fromtimestamp(epoch_seconds, timezone.utc).isoformat()


def _gigabytes(value: Optional[float]) -> str:
    return f"{(value or 0) / BYTES_PER_GB:.2f}"


class UniFiAdapter(RESTAdapter):
    """
    UniFi domain adapter.

    Provides tools for:
    - Client, device, health and alert monitoring
    - Traffic statistics and threat management status
    - Client blocking, reconnection, naming and device restarts

    Read requests are retried on transport errors; writes are not.
    """

    category = ToolCategory.NETWORK

    def __init__(
        self,
        settings: UniFiSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        super().__init__(
            base_url=f"https://{settings.host}" if settings.host else "https://unifi.invalid",
            timeout=settings.timeout_seconds,
            headers={
                "X-API-KEY": settings.api_key or "",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            verify=settings.verify_tls,
            transport=transport,
        )
        self.settings = settings

    def descriptors(self) -> list[ToolDescriptor]:
        return [
            # Read-only
            self._tool("unifi_get_clients", "Get all connected clients/devices on the UniFi network",
                       self.get_clients, ClientsArguments),
            self._tool("unifi_get_devices", "Get all UniFi network devices (access points, switches, gateways)",
                       self.get_devices),
            self._tool("unifi_get_network_health", "Get overall network health and status",
                       self.get_network_health),
            self._tool("unifi_get_alerts", "Get recent alerts and notifications from the UniFi controller",
                       self.get_alerts, AlertsArguments),
            self._tool("unifi_get_traffic_stats", "Get bandwidth and traffic statistics",
                       self.get_traffic_stats, TrafficArguments),
            self._tool("unifi_get_client_details", "Get detailed information for a specific client by MAC address",
                       self.get_client_details, MacArguments),
            self._tool("unifi_get_threat_management", "Get Threat Management (IPS/IDS) status and configuration",
                       self.get_threat_management),
            # Management
            self._tool("unifi_block_client", "Block a client from accessing the network",
                       self.block_client, MacArguments),
            self._tool("unifi_unblock_client", "Unblock a previously blocked client",
                       self.unblock_client, MacArguments),
            self._tool("unifi_reconnect_client", "Force a client to disconnect and reconnect to the network",
                       self.reconnect_client, MacArguments),
            self._tool("unifi_restart_device", "Restart a UniFi device (access point, switch, etc.)",
                       self.restart_device, MacArguments),
            self._tool("unifi_set_client_name", "Set or update the name/alias for a client",
                       self.set_client_name, SetClientNameArguments),
        ]

    def _endpoint(self, path: str) -> str:
        return f"/proxy/network/api/s/{self.settings.site}/{path}"

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        reraise=True
    )
    async def _get(self, path: str) -> list[dict[str, Any]]:
        payload = await self._request("GET", self._endpoint(path))
        return payload.get("data", []) if isinstance(payload, dict) else []

    async def _send(self, method: str, path: str, body: dict[str, Any]) -> list[dict[str, Any]]:
        payload = await self._request(method, self._endpoint(path), json=body)
        return payload.get("data", []) if isinstance(payload, dict) else []

    async def _call(self, tool_name: str, action: str, operation) -> ToolResult:
        """Run ``operation`` against the controller, mapping failures to error results."""
        if not self.settings.configured:
            return self._error(tool_name, NOT_CONFIGURED, code="NOT_CONFIGURED")

        try:
            return await operation()
        except ToolExecutionError as e:
            return self._error(tool_name, f"Failed to {action}: {e.message}", code=e.code)
        except httpx.HTTPError as e:
            logger.warning("UniFi request failed", tool=tool_name, error=str(e))
            return self._error(tool_name, f"Failed to {action}: {e}", code="BACKEND_UNAVAILABLE")

    async def get_clients(self, args: ClientsArguments) -> ToolResult:
        async def operation() -> ToolResult:
            data = await self._get("stat/alluser" if args.include_history else "stat/sta")
            clients = [
                {
                    "mac": c.get("mac"),
                    "name": c.get("name") or c.get("hostname") or "Unknown",
                    "ip": c.get("ip"),
                    "connected": "Wired" if c.get("is_wired") else "Wireless",
                    "network": c.get("network") or c.get("essid") or "Unknown",
                    "uptime": _hours_minutes(c.get("uptime")),
                    "tx_bytes": c.get("tx_bytes"),
                    "rx_bytes": c.get("rx_bytes"),
                    "signal": c.get("signal") or "N/A",
                    "blocked": c.get("blocked", False),
                }
                for c in data
            ]
            return self._json("unifi_get_clients", {"count": len(clients), "clients": clients})

        return await self._call("unifi_get_clients", "get clients", operation)

    async def get_devices(self, args: Any) -> ToolResult:
        async def operation() -> ToolResult:
            data = await self._get("stat/device")
            devices = []
            for d in data:
                stats = d.get("system-stats") or {}
                devices.append({
                    "name": d.get("name") or "Unnamed",
                    "mac": d.get("mac"),
                    "model": d.get("model"),
                    "type": d.get("type"),
                    "ip": d.get("ip"),
                    "version": d.get("version"),
                    "state": "Connected" if d.get("state") == 1 else "Disconnected",
                    "uptime": _days_hours(d.get("uptime")),
                    "cpu": f"{stats['cpu']}%" if "cpu" in stats else "N/A",
                    "mem": f"{stats['mem']}%" if "mem" in stats else "N/A",
                    "clients": d.get("num_sta", 0),
                })
            return self._json("unifi_get_devices", {"count": len(devices), "devices": devices})

        return await self._call("unifi_get_devices", "get devices", operation)

    async def get_network_health(self, args: Any) -> ToolResult:
        fields = (
            "subsystem", "status", "num_user", "num_guest", "num_adopted", "wan_ip",
            "isp_name", "latency", "uptime", "drops", "xput_up", "xput_down",
        )

        async def operation() -> ToolResult:
            data = await self._get("stat/health")
            health = [{key: s.get(key) for key in fields} for s in data]
            return self._json("unifi_get_network_health", {"health": health})

        return await self._call("unifi_get_network_health", "get network health", operation)

    async def get_alerts(self, args: AlertsArguments) -> ToolResult:
        async def operation() -> ToolResult:
            data = await self._get("stat/alarm")
            if not args.archived:
                data = [a for a in data if not a.get("archived")]
            alerts = [
                {
                    "id": a.get("_id"),
                    "type": a.get("key"),
                    "message": a.get("msg"),
                    "time": _iso(a.get("time")),
                    "archived": a.get("archived", False),
                    "handled_admin": a.get("handled_admin_id"),
                }
                for a in data[: args.limit]
            ]
            return self._json("unifi_get_alerts", {"count": len(alerts), "alerts": alerts})

        return await self._call("unifi_get_alerts", "get alerts", operation)

    async def get_traffic_stats(self, args: TrafficArguments) -> ToolResult:
        async def operation() -> ToolResult:
            body = {"attrs": ["bytes", "wan-tx_bytes", "wan-rx_bytes", "num_sta"], "n": args.limit}
            data = await self._send("POST", f"stat/report/{args.type}.site", body)
            stats = [
                {
                    # Report timestamps are in milliseconds
                    "time": _iso(p["time"] / 1000) if p.get("time") else "Unknown",
                    "wan_tx_gb": _gigabytes(p.get("wan-tx_bytes")),
                    "wan_rx_gb": _gigabytes(p.get("wan-rx_bytes")),
                    "num_clients": p.get("num_sta", 0),
                }
                for p in data
            ]
            return self._json("unifi_get_traffic_stats", {"type": args.type, "count": len(stats), "stats": stats})

        return await self._call("unifi_get_traffic_stats", "get traffic stats", operation)

    async def get_client_details(self, args: MacArguments) -> ToolResult:
        async def operation() -> ToolResult:
            data = await self._get(f"stat/user/{args.mac}")
            if not data:
                return self._not_found("unifi_get_client_details", f"Client not found: {args.mac}")

            c = data[0]
            return self._json("unifi_get_client_details", {
                "mac": c.get("mac"),
                "name": c.get("name") or c.get("hostname") or "Unknown",
                "hostname": c.get("hostname"),
                "ip": c.get("ip"),
                "oui": c.get("oui"),
                "is_wired": c.get("is_wired"),
                "network": c.get("network") or c.get("essid"),
                "vlan": c.get("vlan"),
                "first_seen": _iso(c.get("first_seen")),
                "last_seen": _iso(c.get("last_seen")),
                "uptime": _hours_minutes(c.get("uptime")),
                "tx_bytes": c.get("tx_bytes"),
                "rx_bytes": c.get("rx_bytes"),
                "tx_packets": c.get("tx_packets"),
                "rx_packets": c.get("rx_packets"),
                "signal": c.get("signal"),
                "noise": c.get("noise"),
                "channel": c.get("channel"),
                "radio": c.get("radio"),
                "blocked": c.get("blocked", False),
                "noted": c.get("noted", False),
                "note": c.get("note"),
                "fingerprint": c.get("fingerprint_override") or c.get("dev_id_override"),
            })

        return await self._call("unifi_get_client_details", "get client details", operation)

    async def get_threat_management(self, args: Any) -> ToolResult:
        async def operation() -> ToolResult:
            data = await self._get("rest/setting/ips")
            if not data:
                return self._not_found("unifi_get_threat_management", "Threat management settings not available")

            s = data[0]
            return self._json("unifi_get_threat_management", {
                "enabled": s.get("ips_mode") != "disabled",
                "mode": s.get("ips_mode"),
                "ad_blocking": s.get("ad_blocking_enabled"),
                "dns_filtering": s.get("dns_filtering_enabled"),
                "dns_filter_mode": s.get("dns_filtering_mode"),
                "honeypot_enabled": s.get("honeypot_enabled"),
                "suppression": s.get("suppression"),
                "enabled_categories": s.get("enabled_categories"),
            })

        return await self._call("unifi_get_threat_management", "get threat management settings", operation)

    async def _station_command(self, tool_name: str, action: str, cmd: str, mac: str, done: str) -> ToolResult:
        async def operation() -> ToolResult:
            await self._send("POST", "cmd/stamgr", {"cmd": cmd, "mac": mac})
            logger.info("UniFi client command sent", command=cmd, mac=mac)
            return self._success(tool_name, f"{done}: {mac}")

        return await self._call(tool_name, action, operation)

    async def block_client(self, args: MacArguments) -> ToolResult:
        return await self._station_command(
            "unifi_block_client", "block client", "block-sta", args.mac, "Successfully blocked client"
        )

    async def unblock_client(self, args: MacArguments) -> ToolResult:
        return await self._station_command(
            "unifi_unblock_client", "unblock client", "unblock-sta", args.mac, "Successfully unblocked client"
        )

    async def reconnect_client(self, args: MacArguments) -> ToolResult:
        return await self._station_command(
            "unifi_reconnect_client", "reconnect client", "kick-sta", args.mac,
            "Successfully forced reconnection for client"
        )

    async def restart_device(self, args: MacArguments) -> ToolResult:
        async def operation() -> ToolResult:
            await self._send("POST", "cmd/devmgr", {"cmd": "restart", "mac": args.mac})
            logger.info("UniFi device restart requested", mac=args.mac)
            return self._success("unifi_restart_device", f"Successfully initiated restart for device: {args.mac}")

        return await self._call("unifi_restart_device", "restart device", operation)

    async def set_client_name(self, args: SetClientNameArguments) -> ToolResult:
        async def operation() -> ToolResult:
            data = await self._get(f"stat/user/{args.mac}")
            if not data:
                return self._not_found("unifi_set_client_name", f"Client not found: {args.mac}")

            await self._send("PUT", f"rest/user/{data[0]['_id']}", {"name": args.name})
            logger.info("UniFi client renamed", mac=args.mac)
            return self._success("unifi_set_client_name", f'Successfully set name for {args.mac} to "{args.name}"')

        return await self._call("unifi_set_client_name", "set client name", operation)


def register_unifi_domain(
    registry: ToolRegistry,
    settings: UniFiSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> UniFiAdapter:
    """Register the UniFi domain with the gateway."""
    adapter = UniFiAdapter(settings, transport)
    adapter.register(registry)
    return adapter
