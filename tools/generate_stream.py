#!/usr/bin/env python3
"""Emit a stream of JSON log lines for trying out logista, e.g.

    tools/generate_stream.py --count 20 --garbage 0.2 | ./logista.py --handle-non-json
"""
import argparse
import datetime
import json
import random
import time

log_levels = ["debug", "info", "warn", "error", "fatal"]
services = ["web", "auth", "db", "cache", "api"]
actions = ["get", "post", "put", "delete", "patch"]
status_codes = [200, 201, 204, 400, 401, 403, 404, 500]
user_ids = list(range(1000, 1020))
garbage_lines = [
    "panic: runtime error: index out of range",
    "goroutine 1 [running]:",
    "\tmain.main()",
    "Traceback (most recent call last):",
]


def generate_json_entry(rng):
    timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()
    level = rng.choice(log_levels)
    service = rng.choice(services)
    action = rng.choice(actions)
    entry = {
        "timestamp": timestamp.replace("+00:00", "Z"),
        "level": level,
        "message": f"{action.upper()} request processed",
        "logger": f"{service}.handler",
        "grpc.service": f"{service}.v1.{service.capitalize()}Service",
        "grpc.method": action.capitalize(),
        "status": rng.choice(status_codes),
        "user_id": rng.choice(user_ids),
        "elapsed": f"{rng.randint(1, 2500)}ms",
        "latency": round(rng.uniform(0.1, 2.0), 3),
    }
    return json.dumps(entry)


def generate_json_stream(count, garbage, rng, entries_per_second=0):
    for i in range(count):
        if rng.random() < garbage:
            print(rng.choice(garbage_lines), flush=True)
        else:
            print(generate_json_entry(rng), flush=True)
        if entries_per_second and (i + 1) % entries_per_second == 0:
            time.sleep(1)


def main():
    parser = argparse.ArgumentParser(description="generate JSON log lines")
    parser.add_argument("--count", type=int, default=60, help="number of lines")
    parser.add_argument(
        "--garbage", type=float, default=0.0, help="share of non-JSON lines (0-1)"
    )
    parser.add_argument("--rate", type=int, default=0, help="lines per second, 0 for no delay")
    parser.add_argument("--seed", type=int, help="random seed for repeatable output")
    args = parser.parse_args()
    generate_json_stream(args.count, args.garbage, random.Random(args.seed), args.rate)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        pass
