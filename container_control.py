import threading
import time
import logging
import signal
import os
import psutil
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from journey_runner import (
    ConfigurationError,
    JourneyRunner,
    ResultAggregator,
    RunSummary,
    StartRequest,
    logger as jr_logger,
)
from journey_loader import parse_start_request

import asyncio
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, Response

# ------------------------------------------------------
# Logging in UTC
# ------------------------------------------------------
logging.Formatter.converter = time.gmtime

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)sZ - %(levelname)s - %(name)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("journey_container_control")

app = FastAPI()

# ------------------------------------------------------
# Global Runtime State
# ------------------------------------------------------
current_settings = {
    'app_status': 'initializing',  # 'initializing' | 'running' | 'stopped' | 'completed' | 'error'
    'container_status': 'running'
}

journey_runner_instance = None  # type: Optional[JourneyRunner]
event_loop = None               # type: Optional[asyncio.AbstractEventLoop]
background_thread = None        # type: Optional[threading.Thread]
last_summary = None             # type: Optional[RunSummary]

# ---------------------------------------------------------------------
# HELPER: Restructure incoming data to have { "config": {...}, "journey": {...} }.
# Top-level keys other than 'journey' are treated as config fields.
# ---------------------------------------------------------------------
def _ensure_config_journey_structure(data: dict) -> dict:
    journey = data.pop("journey", None)
    config = dict(data.pop("config", None) or {})

    for key in list(data.keys()):
        config[key] = data.pop(key)

    return {"config": config, "journey": journey if journey is not None else {}}

# ---------------------------------------------------------------------
# FORCE-STOP HELPER
# ---------------------------------------------------------------------
def _force_stop_journey_runner():
    """
    Immediately stop the journey runner if it exists and is running,
    then set status to 'stopped' and clear references.
    """
    global journey_runner_instance

    instance = journey_runner_instance
    loop = event_loop
    thread = background_thread

    if not instance:
        logger.info("No journey runner instance to stop.")
        current_settings['app_status'] = 'stopped'
        return

    logger.info("Forcibly stopping existing journey runner...")
    try:
        if loop and not loop.is_closed() and loop.is_running():
            future = asyncio.run_coroutine_threadsafe(instance.stop(), loop)
            future.result(timeout=10)
        else:
            logger.warning("Event loop unavailable or not running; forcing instance.running = False.")
            instance.running = False
    except Exception as e:
        logger.error(f"Unexpected error forcibly stopping journey runner: {e}", exc_info=True)
    finally:
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=10)
        current_settings['app_status'] = 'stopped'
        journey_runner_instance = None
        logger.info("Journey runner forcibly stopped and marked as 'stopped'.")

# ---------------------------------------------------------------------
# BACKGROUND THREAD ROUTINE
# ---------------------------------------------------------------------
def run_journey_runner_in_loop(runner: JourneyRunner):
    """
    Dedicated background thread: creates an asyncio loop
    and runs the journey runner until its iterations finish or it is stopped.
    """
    global event_loop, last_summary

    try:
        event_loop = asyncio.new_event_loop()
        asyncio.set_event_loop(event_loop)
        logger.info("Starting journey generation...")
        last_summary = event_loop.run_until_complete(runner.run())
        if current_settings['app_status'] == 'running':
            current_settings['app_status'] = 'completed'
    except asyncio.CancelledError:
        logger.info("Journey generation cancelled.")
    except Exception as e:
        logger.error(f"Background journey runner error: {e}", exc_info=True)
        current_settings['app_status'] = 'error'
    finally:
        logger.info("Background journey runner thread exiting.")
        if current_settings['app_status'] == 'running':
            current_settings['app_status'] = 'stopped'

        if event_loop and not event_loop.is_closed():
            tasks = asyncio.all_tasks(event_loop)
            for task in tasks:
                if not task.done():
                    task.cancel()
            try:
                event_loop.run_until_complete(asyncio.gather(*tasks, return_exceptions=True))
            except RuntimeError as e:
                logger.warning(f"Error during loop shutdown gather: {e}")
            finally:
                event_loop.close()
                logger.info("Asyncio event loop closed.")

# ---------------------------------------------------------------------
# HELPER: Collect runner metrics from the background loop
# ---------------------------------------------------------------------
def _collect_runner_metrics() -> Dict[str, Any]:
    rps_val = 0.0
    active_users = 0
    summary = last_summary

    instance = journey_runner_instance
    loop = event_loop

    if instance and instance.running and loop and not loop.is_closed():
        try:
            rps_val = asyncio.run_coroutine_threadsafe(instance.aggregator.get_rps(), loop).result(timeout=0.5)
        except Exception as e:
            logger.error(f"Error getting RPS from runner: {e}")
        try:
            summary = asyncio.run_coroutine_threadsafe(instance.aggregator.snapshot(), loop).result(timeout=0.5)
        except Exception as e:
            logger.error(f"Error getting run summary from runner: {e}")
        active_users = instance.get_active_user_count()

    return {
        "rps": float(rps_val),
        "active_virtual_users": active_users,
        "summary": summary,
    }

# ---------------------------------------------------------------------
# FASTAPI ENDPOINTS
# ---------------------------------------------------------------------
@app.get('/api/health')
async def health_check():
    """Basic health check endpoint."""
    return JSONResponse({
        "status": "healthy",
        "app_status": current_settings['app_status']
    })

@app.post('/api/start')
async def start_journey_runner(data: dict):
    """Start a load run with the given configuration and journey definition.
    If a run is already active it is stopped before the new one begins.
    """
    global background_thread, journey_runner_instance, last_summary

    structured_data = _ensure_config_journey_structure(data)

    if current_settings['app_status'] == 'running':
        logger.info("Received /api/start while journey runner is already running. Forcing stop...")
        _force_stop_journey_runner()

    try:
        start_req_obj: StartRequest = parse_start_request(structured_data)
        runner = JourneyRunner(start_req_obj.config, start_req_obj.journey, ResultAggregator())
        logger.info(f"Start request validated successfully. Journey runner log level is {logging.getLevelName(jr_logger.level)}.")
    except ConfigurationError as ce:
        logger.error(f"Request validation failed: {ce}")
        current_settings['app_status'] = 'stopped'
        raise HTTPException(status_code=400, detail=str(ce))

    current_settings['app_status'] = 'running'
    journey_runner_instance = runner
    last_summary = None
    background_thread = threading.Thread(
        target=run_journey_runner_in_loop,
        args=(runner,),
        daemon=True
    )
    background_thread.start()

    logger.info("Journey runner started")
    return JSONResponse({
        "message": "Journey runner started with the provided journey",
        "run_label": runner.run_label,
        "journey_label": runner.journey_label,
        "run_seed": runner.run_seed,
    })

@app.post('/api/stop')
async def stop_journey_runner():
    """
    Immediately stops the running journey runner (if any) and sets status to 'stopped'.
    """
    if current_settings['app_status'] != 'running':
        if current_settings['app_status'] in ('stopped', 'completed'):
            return JSONResponse({"message": f"Journey runner is already {current_settings['app_status']}."})
        return JSONResponse({"message": f"No running journey runner to stop (status={current_settings['app_status']})."})

    _force_stop_journey_runner()
    return JSONResponse({"message": "Journey runner forcibly stopped."})

@app.get('/api/metrics')
async def api_metrics():
    """
    Return combined container + journey runner stats.
    Runner metrics are placed under the top-level 'metrics' key.
    """
    container_cpu_percent = psutil.cpu_percent(interval=0.1)
    container_mem = psutil.virtual_memory()
    net_io = psutil.net_io_counters()

    runner_metrics = _collect_runner_metrics()
    summary = runner_metrics["summary"]

    resp_body = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "app_status": current_settings['app_status'],
        "container_status": current_settings['container_status'],
        "network": {
            "bytes_sent": net_io.bytes_sent,
            "bytes_recv": net_io.bytes_recv,
            "packets_sent": net_io.packets_sent,
            "packets_recv": net_io.packets_recv
        },
        "system": {
            "cpu_percent": round(container_cpu_percent, 1),
            "memory_percent": round(container_mem.percent, 1),
            "memory_available_mb": round(container_mem.available / (1024 * 1024), 2),
            "memory_used_mb": round(container_mem.used / (1024 * 1024), 2)
        },
        "metrics": {
            "rps": runner_metrics["rps"],
            "active_virtual_users": runner_metrics["active_virtual_users"],
            "summary": summary.model_dump() if summary else None,
        }
    }
    return JSONResponse(resp_body)

def _escape_label_value(value: str) -> str:
    """Escape a Prometheus label value (backslash, double quote, newline)."""
    return value.replace('\\', '\\\\').replace('"', '\\"').replace('\n', '\\n')

@app.get('/metrics')
async def metrics_prometheus():
    """
    Prometheus /metrics endpoint with combined container + journey runner stats.
    """
    container_cpu_percent = psutil.cpu_percent(interval=0.1)
    container_mem = psutil.virtual_memory()
    net_io = psutil.net_io_counters()

    runner_metrics = _collect_runner_metrics()
    summary = runner_metrics["summary"]

    status_map = {
        "initializing": 0,
        "running": 1,
        "stopped": 2,
        "error": 3,
        "completed": 4,
    }
    app_status_val = status_map.get(current_settings['app_status'], 3)

    lines = [
        "# HELP container_cpu_percent CPU usage percent.",
        "# TYPE container_cpu_percent gauge",
        f"container_cpu_percent {round(container_cpu_percent, 1)}",
        "# HELP container_memory_percent Memory usage percent.",
        "# TYPE container_memory_percent gauge",
        f"container_memory_percent {round(container_mem.percent, 1)}",
        "# HELP container_memory_used_bytes Memory used in bytes.",
        "# TYPE container_memory_used_bytes gauge",
        f"container_memory_used_bytes {container_mem.used}",
        "# HELP container_network_bytes_sent_total Bytes sent.",
        "# TYPE container_network_bytes_sent_total counter",
        f"container_network_bytes_sent_total {net_io.bytes_sent}",
        "# HELP container_network_bytes_recv_total Bytes received.",
        "# TYPE container_network_bytes_recv_total counter",
        f"container_network_bytes_recv_total {net_io.bytes_recv}",
        "# HELP journey_runner_rps Current requests-per-second sent by virtual users.",
        "# TYPE journey_runner_rps gauge",
        f"journey_runner_rps {runner_metrics['rps']}",
        "# HELP journey_runner_active_users Current number of active virtual users.",
        "# TYPE journey_runner_active_users gauge",
        f"journey_runner_active_users {runner_metrics['active_virtual_users']}",
        "# HELP app_status Application status (initializing=0, running=1, stopped=2, error=3, completed=4).",
        "# TYPE app_status gauge",
        f"app_status {app_status_val}",
    ]
    if summary:
        journeys = summary.journeys
        lines += [
            "# HELP journey_runner_journeys_total Completed journeys by outcome.",
            "# TYPE journey_runner_journeys_total counter",
            f'journey_runner_journeys_total{{outcome="pass"}} {journeys.passed}',
            f'journey_runner_journeys_total{{outcome="fail"}} {journeys.failed}',
            "# HELP journey_runner_journey_duration_avg_ms Average journey duration in milliseconds.",
            "# TYPE journey_runner_journey_duration_avg_ms gauge",
            f"journey_runner_journey_duration_avg_ms {journeys.avg_ms}",
            "# HELP journey_runner_step_duration_avg_ms Average step duration in milliseconds.",
            "# TYPE journey_runner_step_duration_avg_ms gauge",
        ]
        lines += [
            f'journey_runner_step_duration_avg_ms{{step="{_escape_label_value(step_name)}"}} {stats.avg_ms}'
            for step_name, stats in summary.steps.items()
        ]
        lines += [
            "# HELP journey_runner_step_failures_total Failed step transactions.",
            "# TYPE journey_runner_step_failures_total counter",
        ]
        lines += [
            f'journey_runner_step_failures_total{{step="{_escape_label_value(step_name)}"}} {stats.failed}'
            for step_name, stats in summary.steps.items()
        ]
    return Response("\n".join(lines) + "\n", media_type="text/plain; version=0.0.4")

# ---------------------------------------------------------------------
# SIGNAL HANDLER (SIGTERM, SIGINT)
# ---------------------------------------------------------------------
def handle_signal(signum, frame):
    """
    Handle SIGTERM/SIGINT to gracefully stop the journey runner.
    """
    signal_name = signal.Signals(signum).name
    logger.info(f"Received signal {signal_name} ({signum}); initiating immediate shutdown.")
    _force_stop_journey_runner()

    logger.info("Exiting journey_container_control due to signal.")
    os._exit(0)


def install_signal_handlers():
    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

# ---------------------------------------------------------------------
# MAIN ENTRY POINT (for dev usage)
# ---------------------------------------------------------------------
if __name__ == '__main__':
    install_signal_handlers()
    logger.info("Starting journey_container_control API server...")
    current_settings['app_status'] = 'initializing'

    import uvicorn
    uvicorn.run(
        "container_control:app",
        host='0.0.0.0',
        port=int(os.environ.get("CONTROL_PORT", "8081")),
        log_level="info",
        reload=os.environ.get("DEV_RELOAD", "false").lower() == "true"
    )
