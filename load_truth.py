#!/usr/bin/env python3
"""Assemble truth/components/*.json into one Truth document and load it into Redis."""
import os, sys, json, time, argparse, glob, redis


def read_json_file(path: str) -> dict:
    try:
        with open(path, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        sys.exit(f"ERROR: file not found: {path}")
    except json.JSONDecodeError as e:
        sys.exit(f"ERROR: invalid JSON in {path}: {e}")


def build_truth(components_dir: str, version: str) -> dict:
    components = {}
    for path in sorted(glob.glob(os.path.join(components_dir, "*.json"))):
        name = os.path.splitext(os.path.basename(path))[0]
        components[name] = read_json_file(path)
    if not components:
        sys.exit(f"ERROR: no component definitions in {components_dir}")
    return {"version": version, "components": components}


def main(argv=None) -> int:
    here = os.path.dirname(os.path.abspath(__file__))
    p = argparse.ArgumentParser(description="Load component Truth into Redis (single key).")
    p.add_argument("--redis-url", default=os.getenv("TRUTH_REDIS_URL", "redis://127.0.0.1:6379"))
    p.add_argument("--components", default=os.path.join(here, "truth", "components"))
    p.add_argument("--key", default=os.getenv("TRUTH_REDIS_KEY", "truth"))
    p.add_argument("--version", default=time.strftime("%Y%m%d%H%M%S"))
    args = p.parse_args(argv)

    truth = build_truth(args.components, args.version)

    r = redis.Redis.from_url(args.redis_url, decode_responses=True)
    pipe = r.pipeline()
    pipe.set(args.key, json.dumps(truth, separators=(",", ":")))
    pipe.set(f"{args.key}:version", truth["version"])
    pipe.set(f"{args.key}:ts", str(int(time.time())))
    pipe.execute()

    # Component names only; env values may hold secrets
    print(f"Loaded {', '.join(truth['components'])} into {args.key} at {args.redis_url}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
