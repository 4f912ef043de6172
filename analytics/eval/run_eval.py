"""
Evaluation harness -- runs eval_queries.jsonl through the validation pipeline
and generates analytics/reports/eval_report.md.

Checks:
  - Adversarial blocking  (hostile queries rejected with the expected reason)
  - Benign acceptance     (legitimate queries accepted and tenant-scoped)
  - Confirmation flagging (writes flagged for a preview where expected)
  - Latency               (validation ms per query)

No database is needed: only validation and the tenant-scope rewrite run.
"""
from __future__ import annotations

import datetime
import json
import sys
import time
from pathlib import Path
from typing import Any

EVAL_PATH = Path(__file__).resolve().parent / "eval_queries.jsonl"
REPORT_PATH = Path(__file__).resolve().parents[1] / "reports" / "eval_report.md"

EVAL_TENANT = "org-eval"
EVAL_ACTOR = "eval-runner"


def _load_queries() -> list[dict[str, Any]]:
    lines = EVAL_PATH.read_text().splitlines()
    return [json.loads(line) for line in lines if line.strip()]


def _run_one(q: dict[str, Any], policy) -> dict[str, Any]:
    """Validate a single query and compare against its expectation."""
    from sql_gateway.core.context import OperationKind, QueryRequest, TenantContext
    from sql_gateway.governance.pipeline import validate_query

    ctx = TenantContext(
        tenant_id=EVAL_TENANT,
        actor_id=EVAL_ACTOR,
        permission_level=q.get("permission_level", "member"),
    )
    request = QueryRequest(query=q["query"], operation=OperationKind(q["operation"]))
    expect = q["expect"]

    t0 = time.perf_counter()
    outcome = validate_query(request, ctx, policy)
    latency = (time.perf_counter() - t0) * 1000

    actual = "accepted" if outcome.accepted else outcome.rejection.reason.value
    success = actual == expect
    if success and expect == "accepted" and "needs_confirmation" in q:
        success = outcome.needs_confirmation == q["needs_confirmation"]

    return {
        "query": q["query"],
        "operation": q["operation"],
        "expect": expect,
        "actual": actual,
        "detail": outcome.rejection.message if outcome.rejection else "",
        "needs_confirmation": outcome.needs_confirmation,
        "scoped_sql": outcome.rewritten.sql if outcome.rewritten else "",
        "latency_ms": latency,
        "success": success,
    }


def _generate_report(results: list[dict[str, Any]]) -> str:
    """Generate the Markdown eval report."""
    total = len(results)
    now = datetime.datetime.now().strftime("%Y-%m-%d %H:%M")

    benign = [r for r in results if r["expect"] == "accepted"]
    hostile = [r for r in results if r["expect"] != "accepted"]

    # -- Aggregate metrics --
    successes = sum(1 for r in results if r["success"])
    success_rate = (successes / total * 100) if total else 0

    accepted_ok = sum(1 for r in benign if r["success"])
    accepted_rate = (accepted_ok / len(benign) * 100) if benign else 0

    blocked = sum(1 for r in hostile if r["actual"] != "accepted")
    blocked_rate = (blocked / len(hostile) * 100) if hostile else 0

    reason_ok = sum(1 for r in hostile if r["success"])
    reason_rate = (reason_ok / len(hostile) * 100) if hostile else 0

    # Latency
    latencies = sorted(r["latency_ms"] for r in results)
    avg_lat = sum(latencies) / len(latencies) if latencies else 0
    p50_lat = latencies[len(latencies) // 2] if latencies else 0
    p95_idx = min(int(len(latencies) * 0.95), len(latencies) - 1) if latencies else 0
    p95_lat = latencies[p95_idx] if latencies else 0
    max_lat = latencies[-1] if latencies else 0

    # -- Build report --
    lines: list[str] = []
    lines.append("# Gateway Validation Report")
    lines.append("")
    lines.append(f"> Generated: {now}  |  Queries: **{total}**  |  Tenant: `{EVAL_TENANT}`")
    lines.append("")
    lines.append("---")
    lines.append("")
    lines.append("## Summary")
    lines.append("")
    lines.append("| Metric | Value |")
    lines.append("|--------|-------|")
    lines.append(f"| Overall success rate | **{success_rate:.0f}%** ({successes}/{total}) |")
    lines.append(f"| Benign queries accepted | **{accepted_rate:.0f}%** ({accepted_ok}/{len(benign)}) |")
    lines.append(f"| Hostile queries blocked | **{blocked_rate:.0f}%** ({blocked}/{len(hostile)}) |")
    lines.append(f"| Blocked with expected reason | **{reason_rate:.0f}%** ({reason_ok}/{len(hostile)}) |")
    lines.append("")
    lines.append("## Latency")
    lines.append("")
    lines.append("| Stat | ms |")
    lines.append("|------|-----|")
    lines.append(f"| Mean | {avg_lat:.2f} |")
    lines.append(f"| p50 | {p50_lat:.2f} |")
    lines.append(f"| p95 | {p95_lat:.2f} |")
    lines.append(f"| Max | {max_lat:.2f} |")
    lines.append("")
    lines.append("---")
    lines.append("")

    # -- Example scoped SQL --
    example = next((r for r in benign if r["scoped_sql"] and r["operation"] == "read"), None)
    if example:
        lines.append("## Example Tenant-Scoped SQL")
        lines.append("")
        lines.append("```sql")
        lines.append(example["query"])
        lines.append("```")
        lines.append("")
        lines.append("becomes")
        lines.append("")
        lines.append("```sql")
        lines.append(example["scoped_sql"])
        lines.append("```")
        lines.append("")
        lines.append("---")
        lines.append("")

    # -- Per-query results table --
    lines.append("## Per-Query Results")
    lines.append("")
    lines.append("| # | Query | Op | Expected | Actual | Confirm | Latency | Pass |")
    lines.append("|---|-------|----|----------|--------|---------|---------|------|")

    for i, r in enumerate(results, 1):
        qtext = r["query"].replace("|", "\\|")
        qtext = qtext[:55] + ("..." if len(qtext) > 55 else "")
        c = "YES" if r["needs_confirmation"] else "--"
        p = "OK" if r["success"] else "ERROR"
        lines.append(
            f"| {i} | `{qtext}` | {r['operation']} | {r['expect']} | {r['actual']} "
            f"| {c} | {r['latency_ms']:.2f} | {p} |"
        )

    lines.append("")

    # -- Failures detail --
    lines.append("## Failures")
    lines.append("")
    failures = [(i, r) for i, r in enumerate(results, 1) if not r["success"]]
    if failures:
        for i, r in failures:
            lines.append(f"### #{i}: `{r['query']}`")
            lines.append("")
            lines.append(f"**Expected:** {r['expect']}  |  **Actual:** {r['actual']}")
            if r["detail"]:
                lines.append(f"**Detail:** {r['detail']}")
            lines.append("")
    else:
        lines.append("None -- all queries handled correctly.")
        lines.append("")

    return "\n".join(lines)


def run():
    # Ensure UTF-8 output on Windows (cp1252 can't handle box drawing)
    if sys.platform == "win32":
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")  # type: ignore[attr-defined]

    from sql_gateway.governance.policy_loader import load_policy

    policy = load_policy()
    queries = _load_queries()
    print(f"Loaded {len(queries)} eval queries.")
    print("Running evaluation...\n")

    results = []
    for i, q in enumerate(queries, 1):
        r = _run_one(q, policy)
        status = "PASS" if r["success"] else "FAIL"
        print(f"  [{i:2d}/{len(queries)}] {status}  {r['query'][:60]:<60}  {r['actual']}")
        results.append(r)

    report = _generate_report(results)

    REPORT_PATH.parent.mkdir(parents=True, exist_ok=True)
    REPORT_PATH.write_text(report, encoding="utf-8")
    print(f"\nReport written to {REPORT_PATH}")

    total = len(results)
    successes = sum(1 for r in results if r["success"])
    print(f"\n{'='*50}")
    print(f"  Success: {successes}/{total} ({successes/total*100:.0f}%)")
    print(f"{'='*50}")


if __name__ == "__main__":
    run()
