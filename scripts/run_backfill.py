"""Drive backfill modes of the indexing service from the command line.

Batch modes (embedding_batch, ner_batch) are called repeatedly until the
service reports ``complete``. Job modes (backfill_embeddings,
backfill_entities, full_reindex) are started once and their job record is
polled until it reaches a terminal status.

Requests are signed with the service key, so SUPABASE_KEY (or
REQUEST_SIGNING_SECRET) must match the server's configuration.
"""

import argparse
import json
import sys
import time
from pathlib import Path

import httpx

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import settings
from src.security.signing import sign_request

BATCH_MODES = ("embedding_batch", "ner_batch")
JOB_MODES = ("backfill_embeddings", "backfill_entities", "full_reindex")
ONE_SHOT_MODES = ("backfill_all", "reset_all_chunks")
TERMINAL_STATUSES = {"completed", "failed", "cancelled"}


def _post(client: httpx.Client, path: str, payload: dict | None = None) -> dict:
    body = json.dumps(payload).encode() if payload is not None else b""
    headers = sign_request(body, settings.signing_secret)
    headers["Content-Type"] = "application/json"
    response = client.post(path, content=body, headers=headers)
    if response.status_code == 429:
        wait = int(response.headers.get("Retry-After", "5"))
        print(f"  rate limited, waiting {wait}s")
        time.sleep(wait)
        return _post(client, path, payload)
    response.raise_for_status()
    return response.json()


def _get(client: httpx.Client, path: str) -> dict:
    response = client.get(path, headers=sign_request(b"", settings.signing_secret))
    response.raise_for_status()
    return response.json()


def run_batches(client: httpx.Client, mode: str, batch_size: int | None, pause: float) -> None:
    payload: dict = {mode: True}
    if batch_size:
        payload["batch_size"] = batch_size

    total_processed = 0
    total_errors = 0
    rounds = 0
    while True:
        rounds += 1
        result = _post(client, "/api/chunk-transcripts", payload)
        total_processed += result["processed"]
        total_errors += result["errors"]
        print(
            f"  [{rounds}] processed {result['processed']}, errors {result['errors']}, "
            f"remaining {result['remaining']}/{result['total']}"
        )
        if result["complete"]:
            break
        time.sleep(pause)

    print(f"\nDone! {total_processed} processed, {total_errors} errors in {rounds} batches.")


def run_job(client: httpx.Client, mode: str, poll_interval: float) -> int:
    started = _post(client, "/api/chunk-transcripts", {mode: True})
    job_id = started["job_id"]
    print(f"Started job {job_id}")

    last_message = None
    while True:
        job = _get(client, f"/api/jobs/{job_id}")
        progress = job.get("progress") or {}
        message = progress.get("message")
        if "overall_percent" in progress:
            message = f"{progress['overall_percent']:5.1f}% {progress.get('stage')} - {message}"
        if message != last_message:
            print(f"  {message}")
            last_message = message
        if job["status"] in TERMINAL_STATUSES:
            break
        time.sleep(poll_interval)

    print(f"\nJob {job_id} {job['status']}" + (f": {job['error']}" if job.get("error") else ""))
    return 0 if job["status"] == "completed" else 1


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.split("\n\n")[0])
    parser.add_argument("mode", choices=BATCH_MODES + JOB_MODES + ONE_SHOT_MODES)
    parser.add_argument("--url", default=f"http://localhost:{settings.api_port}")
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--pause", type=float, default=1.0, help="Seconds between batch calls")
    parser.add_argument("--poll", type=float, default=5.0, help="Seconds between job polls")
    args = parser.parse_args()

    if not settings.signing_secret:
        print("SUPABASE_KEY or REQUEST_SIGNING_SECRET must be set to sign requests.")
        return 2

    with httpx.Client(base_url=args.url, timeout=120.0) as client:
        if args.mode in BATCH_MODES:
            run_batches(client, args.mode, args.batch_size, args.pause)
            return 0
        if args.mode in JOB_MODES:
            return run_job(client, args.mode, args.poll)
        print(json.dumps(_post(client, "/api/chunk-transcripts", {args.mode: True}), indent=2))
        return 0


if __name__ == "__main__":
    sys.exit(main())
