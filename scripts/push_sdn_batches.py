#!/usr/bin/env python3
"""
Push an OFAC SDN XML file through the Tripwire ingestion callbacks.

Plays the role of the batch worker for local loads: parses sdn.xml,
then calls truncate, batch (once per chunk) and complete on the
internal API. If any step fails the run is reported as failed.

Usage:
    python push_sdn_batches.py --run-id 1 --xml ./data/ofac/sdn.xml
    python push_sdn_batches.py --help
"""

import argparse
import asyncio
import sys
from pathlib import Path

import httpx

from tripwire.ingestion.sdn_xml import download_sdn_list, parse_sdn_xml

DATASET = "ofac_sdn"
DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_BATCH_SIZE = 500


def _post(client: httpx.Client, path: str, payload: dict) -> dict:
    resp = client.post(path, json=payload)
    resp.raise_for_status()
    return resp.json()


def push_records(
    base_url: str,
    run_id: int,
    records: list,
    batch_size: int = DEFAULT_BATCH_SIZE,
    skip_vectorization: bool = False,
    verbose: bool = True,
) -> bool:
    """
    Send records to the ingestion callbacks of one run.

    Args:
        base_url: Tripwire base URL
        run_id: Ingestion run the batches belong to
        records: Parsed SDN record dicts
        batch_size: Records per batch callback
        skip_vectorization: Do not queue vectorization on completion
        verbose: Print progress messages

    Returns:
        True when every callback succeeded
    """
    prefix = f"/internal/{DATASET}"
    total_batches = (len(records) + batch_size - 1) // batch_size
    errors = []

    with httpx.Client(base_url=base_url, timeout=120.0) as client:
        try:
            result = _post(client, f"{prefix}/truncate", {"run_id": run_id})
            if verbose:
                print(f"Truncated {result.get('deleted_count', 0)} existing records")

            for batch_number in range(total_batches):
                chunk = records[batch_number * batch_size:(batch_number + 1) * batch_size]
                result = _post(client, f"{prefix}/batch", {
                    "run_id": run_id,
                    "batch_number": batch_number,
                    "total_batches": total_batches,
                    "records": chunk,
                })
                errors.extend(result.get("errors", []))
                if verbose:
                    print(f"Batch {batch_number + 1}/{total_batches}: {result.get('inserted', 0)} inserted")

            result = _post(client, f"{prefix}/complete", {
                "run_id": run_id,
                "total_records": len(records),
                "total_batches": total_batches,
                "errors": errors,
                "skip_vectorization": skip_vectorization,
            })
        except httpx.HTTPError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            try:
                _post(client, f"{prefix}/failed", {"run_id": run_id, "error": str(e)})
            except httpx.HTTPError as fail_error:
                print(f"ERROR: could not mark run failed: {fail_error}", file=sys.stderr)
            return False

    if verbose:
        thread_id = result.get("vectorization_thread_id")
        print(f"Run {run_id} completed: {len(records)} records, {len(errors)} errors")
        if thread_id:
            print(f"Vectorization queued as thread {thread_id}")
    return True


def main():
    parser = argparse.ArgumentParser(
        description="Load an OFAC SDN XML file into Tripwire via the batch callbacks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Load a local file into run 1
  python push_sdn_batches.py --run-id 1 --xml ./data/ofac/sdn.xml

  # Download the current list first, then load it
  python push_sdn_batches.py --run-id 2 --xml ./data/ofac/sdn.xml --download

  # Load into a remote instance without vectorizing
  python push_sdn_batches.py --run-id 3 --xml sdn.xml \\
      --base-url https://tripwire.internal --skip-vectorization
        """
    )

    parser.add_argument('--run-id', type=int, required=True,
                        help='Ingestion run id (from POST /ingestion/start)')
    parser.add_argument('--xml', type=Path, default=Path('./data/ofac/sdn.xml'),
                        help='Path of the SDN XML file (default: ./data/ofac/sdn.xml)')
    parser.add_argument('--base-url', default=DEFAULT_BASE_URL,
                        help=f'Tripwire base URL (default: {DEFAULT_BASE_URL})')
    parser.add_argument('--batch-size', type=int, default=DEFAULT_BATCH_SIZE,
                        help=f'Records per batch (default: {DEFAULT_BATCH_SIZE})')
    parser.add_argument('--download', action='store_true',
                        help='Download the SDN XML from Treasury.gov before loading')
    parser.add_argument('--skip-vectorization', action='store_true',
                        help='Do not queue vectorization when the load completes')
    parser.add_argument('--quiet', action='store_true',
                        help='Suppress progress messages (errors only)')

    args = parser.parse_args()
    verbose = not args.quiet

    if args.batch_size < 1:
        print("ERROR: --batch-size must be at least 1", file=sys.stderr)
        return 1

    if args.download:
        download = asyncio.run(download_sdn_list(args.xml))
        if not download.success:
            print(f"ERROR: download failed: {download.error}", file=sys.stderr)
            return 1
        if verbose:
            print(f"Downloaded {download.bytes_downloaded:,} bytes to {args.xml}")

    if not args.xml.exists():
        print(f"ERROR: {args.xml} not found", file=sys.stderr)
        return 1

    records = parse_sdn_xml(args.xml)
    if not records:
        print(f"ERROR: no SDN entries parsed from {args.xml}", file=sys.stderr)
        return 1
    if verbose:
        print(f"Parsed {len(records):,} SDN entries")

    ok = push_records(
        args.base_url,
        args.run_id,
        records,
        batch_size=args.batch_size,
        skip_vectorization=args.skip_vectorization,
        verbose=verbose,
    )
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
