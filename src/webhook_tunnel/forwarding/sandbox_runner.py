"""Child-process side of the transformation sandbox.

Reads ``{"code": ..., "context": ...}`` as JSON on stdin and writes one
JSON document on stdout: ``{"ok": true, "data": ...}`` or
``{"ok": false, "error": ...}``. Runs under ``python -I`` with resource
limits applied by the parent, so only the standard library is imported.
"""

import json
import sys
from datetime import datetime, timezone


def extract_field(obj, path):
    """Read a dotted path such as ``data.object.id`` from nested dicts/lists."""
    current = obj
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
        if current is None:
            return None
    return current


def format_date(value, fmt="iso"):
    """Format an ISO string or unix timestamp as ``iso``, ``unix`` or a strftime pattern."""
    if isinstance(value, (int, float)):
        date = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        date = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)
    if fmt == "iso":
        return date.isoformat()
    if fmt == "unix":
        return int(date.timestamp())
    return date.strftime(fmt)


def run(code, context):
    namespace = {
        "__name__": "__transform__",
        "extract_field": extract_field,
        "format_date": format_date,
        "event": context["event"],
        "request": context["request"],
        "body": context["body"],
        "headers": context["headers"],
    }
    exec(compile(code, "<transform>", "exec"), namespace)
    transform = namespace.get("transform")
    if callable(transform):
        return transform(context)
    # No entry point: pass the body through untouched
    return context["body"]


def main():
    stdout = sys.stdout
    # User prints must not corrupt the result document
    sys.stdout = sys.stderr
    try:
        payload = json.loads(sys.stdin.read())
        result = run(payload["code"], payload["context"])
        try:
            output = json.dumps({"ok": True, "data": result}, allow_nan=False)
        except (TypeError, ValueError) as e:
            output = json.dumps(
                {"ok": False, "error": f"Transformation output is not JSON serializable: {e}"}
            )
    except MemoryError:
        output = json.dumps({"ok": False, "error": "Memory limit exceeded"})
    except RecursionError:
        output = json.dumps({"ok": False, "error": "Maximum recursion depth exceeded"})
    except SystemExit:
        output = json.dumps({"ok": False, "error": "Transformation called exit()"})
    except Exception as e:
        output = json.dumps({"ok": False, "error": f"{type(e).__name__}: {e}"})
    stdout.write(output)
    stdout.flush()


if __name__ == "__main__":
    main()
