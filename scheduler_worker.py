"""
scheduler_worker.py — The Reconciliation Worker
================================================
Standalone script that asks the key service to reconcile every stored key
against AuthTool: rows AuthTool no longer knows are dropped, activated
pending keys are promoted, stale pending keys are expired.

Deploy as a Cron Job: `python scheduler_worker.py`
Schedule: */5 * * * *
Or keep it running: `python scheduler_worker.py --loop`

Set env vars: RECONCILER_SERVICE_URL, INTERNAL_API_KEY, RECONCILE_INTERVAL_SECONDS
"""

import argparse
import asyncio
import logging

import httpx

import config
from db import utcnow

# ── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [SCHEDULER] %(levelname)s %(message)s"
)
log = logging.getLogger("scheduler")

# Swapped for an httpx.MockTransport in tests.
transport = None


def _headers() -> dict:
    return {"X-Internal-Key": config.INTERNAL_API_KEY}


# ── One pass ──────────────────────────────────────────────────────────────────
async def run_reconcile_pass():
    """Returns the key service's summary, or None if the pass didn't run."""
    url = f"{config.RECONCILER_SERVICE_URL}/internal/reconcile"
    try:
        async with httpx.AsyncClient(transport=transport, timeout=120) as client:
            resp = await client.post(url, headers=_headers())
            resp.raise_for_status()
            summary = resp.json()
    except httpx.HTTPStatusError as e:
        log.error(f"Reconcile rejected ({e.response.status_code}): {e.response.text[:200]}")
        return None
    except httpx.HTTPError as e:
        log.error(f"Could not reach key service: {e}")
        return None

    sweep   = summary.get("sweep", {})
    pending = summary.get("pending", {})
    log.info(
        f"Sweep: checked {sweep.get('checked', 0)}, deleted {sweep.get('deleted', 0)}, "
        f"activated {sweep.get('activated', 0)}, errors {sweep.get('errors', 0)}"
    )
    log.info(
        f"Pending: checked {pending.get('checked', 0)}, expired {pending.get('expired', 0)}, "
        f"activated {pending.get('activated', 0)}, errors {pending.get('errors', 0)}"
    )
    return summary


async def run_forever(interval: int):
    while True:
        await run_reconcile_pass()
        await asyncio.sleep(interval)


# ── Main ──────────────────────────────────────────────────────────────────────
def main(argv=None):
    parser = argparse.ArgumentParser(description="Reconcile stored keys against AuthTool")
    parser.add_argument("--loop", action="store_true",
                        help="keep running, one pass every RECONCILE_INTERVAL_SECONDS")
    parser.add_argument("--interval", type=int, default=config.RECONCILE_INTERVAL_SECONDS)
    args = parser.parse_args(argv)

    if not config.INTERNAL_API_KEY:
        log.error("INTERNAL_API_KEY not set, nothing to do")
        return 1

    log.info("═══════════════════════════════════════════════")
    log.info("  RECONCILIATION WORKER STARTING")
    log.info(f"  {utcnow().isoformat()[:19]} UTC")
    log.info("═══════════════════════════════════════════════")

    if args.loop:
        try:
            asyncio.run(run_forever(args.interval))
        except KeyboardInterrupt:
            log.info("Stopped")
        return 0

    summary = asyncio.run(run_reconcile_pass())
    log.info("═══════════════════════════════════════════════")
    log.info("  RECONCILIATION WORKER COMPLETE")
    log.info("═══════════════════════════════════════════════")
    return 0 if summary is not None else 1


if __name__ == "__main__":
    raise SystemExit(main())
