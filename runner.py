#!/usr/bin/env python3
"""
Command-line runner. Counts the objects under a prefix, then (if a search
string is configured) finds an object containing it. Prints one JSON
response per scan.

Usage examples.
  python runner.py --bucket my-bucket --folder logs/2024/ --find ERROR
  S3_BUCKET_NAME=my-bucket FOLDER=logs/ python runner.py --strategy race
"""

import argparse
import json
import os
import sys

from handler import RequestHandler
from scanner import DEFAULT_MAX_KEYS, DEFAULT_MAX_WORKERS, DEFAULT_STRATEGY, STRATEGIES, ListingError, clamp_workers, log_error
from store import AWS_REGION, S3_ENDPOINT_URL, ClientRegistry


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Count objects under an S3 prefix and find the first one containing a string.")
    ap.add_argument("--bucket", type=str, default=os.environ.get("S3_BUCKET_NAME", ""), help="Bucket to scan.")
    ap.add_argument("--folder", type=str, default=os.environ.get("FOLDER", ""), help="Key prefix to scan.")
    ap.add_argument("--find", type=str, default=os.environ.get("FIND") or None, help="Substring to search for. Omit to only count.")
    ap.add_argument("--max-workers", type=str, default=str(DEFAULT_MAX_WORKERS), help="Concurrent downloads. Clamped to 1..256.")
    ap.add_argument("--max-keys", type=int, default=DEFAULT_MAX_KEYS, help="Listing page size. Only one page is scanned.")
    ap.add_argument("--strategy", type=str, default=DEFAULT_STRATEGY, choices=STRATEGIES,
                    help="exhaustive: lowest-index match after reading everything. race: first match to complete, rest cancelled.")
    ap.add_argument("--region", type=str, default=AWS_REGION, help="AWS region.")
    ap.add_argument("--endpoint-url", type=str, default=S3_ENDPOINT_URL, help="S3-compatible endpoint URL.")
    return ap.parse_args(argv)


def build_registry(max_workers) -> ClientRegistry:
    return ClientRegistry(max_pool_connections=max_workers)


def main(argv=None) -> int:
    args = parse_args(argv)
    if not args.bucket:
        log_error("S3_BUCKET_NAME or --bucket is required.")
        return 2

    max_workers = clamp_workers(args.max_workers)
    handler = RequestHandler(
        registry=build_registry(max_workers),
        max_workers=max_workers,
        strategy=args.strategy,
        max_keys=args.max_keys,
        endpoint_url=args.endpoint_url,
    )

    events = [{"s3_bucket_name": args.bucket, "folder": args.folder, "find": None, "region": args.region}]
    if args.find is not None:
        events.append(dict(events[0], find=args.find))

    for event in events:
        try:
            response = handler.handle(event)
        except ListingError as e:
            log_error(str(e))
            return 1
        print(json.dumps(response))
    return 0


if __name__ == "__main__":
    sys.exit(main())
