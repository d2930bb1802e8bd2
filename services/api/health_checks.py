"""
Health probes for the marketplace service: audit trail, royalty registry,
host resources and a summary of what the market currently holds.
"""
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
import psutil

from services.api.eventlog import EventLog
from services.api.logging_config import get_logger
from services.crypto_core.commitments import NATIVE_RAIL
from services.market.listings import Marketplace

logger = get_logger("health")

API_START_TIME = time.time()


def check_eventlog_health(log: EventLog) -> Dict[str, Any]:
    """
    Check the audit-trail database

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    try:
        start = time.time()
        log.ping()
        response_time = (time.time() - start) * 1000
        return {
            "status": "healthy",
            "response_time_ms": round(response_time, 2),
            "path": str(log.db_path),
        }
    except Exception as e:
        logger.error(f"Event log health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}


async def check_royalty_registry_health(registry_url: str) -> Dict[str, Any]:
    """
    Check the remote royalty registry

    Any HTTP answer below 500 counts as reachable; the registry has no
    dedicated health route.
    """
    try:
        start = time.time()
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(registry_url.rstrip("/") + "/")
        if response.status_code >= 500:
            raise RuntimeError(f"registry answered {response.status_code}")
        response_time = (time.time() - start) * 1000
        return {
            "status": "healthy",
            "response_time_ms": round(response_time, 2),
            "registry_url": registry_url,
        }
    except Exception as e:
        logger.error(f"Royalty registry health check failed: {e}")
        return {"status": "unhealthy", "error": str(e), "registry_url": registry_url}


def get_system_metrics() -> Dict[str, Any]:
    """Host load plus the service process footprint."""
    try:
        proc = psutil.Process()
        with proc.oneshot():
            rss = proc.memory_info().rss
            threads = proc.num_threads()
        memory = psutil.virtual_memory()
        return {
            "cpu_percent": round(psutil.cpu_percent(interval=0.1), 2),
            "memory_percent": round(memory.percent, 2),
            "process": {"rss_mb": round(rss / (1024 * 1024), 2), "threads": threads},
        }
    except psutil.Error as e:
        logger.error(f"Failed to get system metrics: {e}")
        return {"error": str(e)}


def get_uptime() -> Dict[str, Any]:
    seconds = int(time.time() - API_START_TIME)
    hours, rem = divmod(seconds, 3600)
    return {"uptime_seconds": seconds, "uptime_formatted": f"{hours}h {rem // 60:02d}m {rem % 60:02d}s"}


def market_summary(market: Marketplace) -> Dict[str, Any]:
    """Active listings by mode and the escrow each rail currently holds."""
    active = market.listings(active_only=True)
    rails = sorted({l.payment_rail for l in active} | {NATIVE_RAIL})
    return {
        "active_fixed": sum(1 for l in active if not l.is_auction),
        "active_auctions": sum(1 for l in active if l.is_auction),
        "escrow": {rail: market.escrow_total(rail) for rail in rails},
        "last_event_seq": market.events.last_seq,
    }


async def comprehensive_health_check(
    market: Marketplace,
    log: Optional[EventLog],
    registry_url: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Probe every dependency and summarise the market

    Args:
        market: the running marketplace
        log: audit trail, or None when disabled
        registry_url: remote royalty registry to probe

    Returns:
        dict with overall status and component statuses
    """
    checks: Dict[str, Any] = {}

    checks["eventlog"] = check_eventlog_health(log) if log is not None else {"status": "disabled"}

    if registry_url:
        checks["royalty_registry"] = await check_royalty_registry_health(registry_url)
    else:
        checks["royalty_registry"] = {"status": "not_configured"}

    checks["system"] = get_system_metrics()
    checks["uptime"] = get_uptime()
    checks["market"] = market_summary(market)

    component_statuses = [
        checks["eventlog"].get("status"),
        checks["royalty_registry"].get("status"),
    ]
    if all(s in ["healthy", "disabled", "not_configured"] for s in component_statuses):
        overall_status = "healthy"
    else:
        overall_status = "unhealthy"

    return {
        "status": overall_status,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "checks": checks,
    }


async def readiness_check(log: Optional[EventLog]) -> bool:
    """
    Check if API is ready to serve requests

    The royalty registry is not critical: a failed lookup only means no royalty.
    """
    try:
        if log is not None:
            return check_eventlog_health(log)["status"] == "healthy"
        return True
    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        return False


async def liveness_check() -> bool:
    return True
