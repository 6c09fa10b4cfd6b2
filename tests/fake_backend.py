"""Scripted stand-in for a stream-json backend CLI.

Usage: ``fake_backend.py <plan.json> <prompt>``

The plan holds a list of runs; the N-th invocation plays run N (the last run
repeats). Each run prints its ``lines`` to stdout (dicts as JSON, strings
verbatim), optionally sleeps, then exits with ``exit``. With ``orphan`` set, a
child that holds stdout open for that many seconds is left behind. Every
prompt received is appended to ``<plan>.prompts`` as one JSON string per line.
"""

import json
import subprocess
import sys
import time
from pathlib import Path


def main() -> int:
    plan_path = Path(sys.argv[1])
    prompt = sys.argv[2] if len(sys.argv) > 2 else ""
    plan = json.loads(plan_path.read_text(encoding="utf-8"))

    counter = plan_path.with_suffix(".count")
    index = int(counter.read_text()) if counter.exists() else 0
    counter.write_text(str(index + 1))
    with plan_path.with_suffix(".prompts").open("a", encoding="utf-8") as fh:
        fh.write(json.dumps(prompt) + "\n")

    runs = plan["runs"]
    run = runs[min(index, len(runs) - 1)]
    for line in run.get("lines", []):
        sys.stdout.write(line if isinstance(line, str) else json.dumps(line))
        sys.stdout.write("\n")
        sys.stdout.flush()
    for line in run.get("stderr", []):
        sys.stderr.write(line + "\n")
        sys.stderr.flush()
    if run.get("orphan"):
        subprocess.Popen([sys.executable, "-c", f"import time; time.sleep({run['orphan']})"])
    if run.get("sleep"):
        time.sleep(run["sleep"])
    return int(run.get("exit", 0))


if __name__ == "__main__":
    sys.exit(main())
