"""Local deterministic form filler for demos and integration tests.

Payload keys it understands:

* ``simulate_error``: fail every attempt with this message.
* ``fail_until_attempt``: fail while the attempt number is below this value.
* ``screenshot_url``: reported alongside simulated failures.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Pretend to submit the form and print the JSON outcome."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--payload-file", required=True)
    args = parser.parse_args(argv)

    envelope = json.loads(Path(args.payload_file).read_text("utf-8"))
    payload = envelope.get("payload") or {}
    attempt_number = int(envelope.get("attempt_number", 1))

    error = None
    if payload.get("simulate_error"):
        error = str(payload["simulate_error"])
    elif attempt_number < int(payload.get("fail_until_attempt", 0)):
        error = f"Simulated failure on attempt {attempt_number}"

    if error is not None:
        print(
            json.dumps(
                {
                    "success": False,
                    "error": error,
                    "screenshot_url": payload.get("screenshot_url"),
                },
            ),
        )
        return 1

    print(json.dumps({"success": True, "job_id": envelope.get("job_id")}))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
