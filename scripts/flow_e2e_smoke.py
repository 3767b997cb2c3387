#!/usr/bin/env python3
from __future__ import annotations

import importlib
import json
import os
import sys
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient

INTAKE_FORM = {
  "full_name": "Smoke Patient",
  "date_of_birth": "1988-07-14",
  "current_weight": "91",
  "allergies": "none",
}


@dataclass
class Step:
  method: str
  path: str
  body: dict[str, Any] | None = None
  expected_status_code: int = 200
  expected_flow_status: str | None = None


@dataclass
class Scenario:
  name: str
  category_id: str
  steps: list[Step] = field(default_factory=list)


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  # Keep smoke runs away from the developer database.
  smoke_dir = tempfile.mkdtemp(prefix="careflow-smoke-")
  os.environ.setdefault("CAREFLOW_DB_PATH", str(Path(smoke_dir) / "careflow-smoke.sqlite"))

  backend_module = importlib.import_module("main")
  backend_module = importlib.reload(backend_module)

  headers = {"Authorization": "Bearer smoke-user"}

  scenarios = [
    Scenario(
      name="Subscription Journey To Completion",
      category_id="weight-mgmt",
      steps=[
        Step("POST", "/product", {"product_id": "semaglutide-1", "subscription_duration_id": "monthly"},
             expected_flow_status="subscription_configured"),
        Step("POST", "/intake/start", expected_flow_status="intake_started"),
        Step("POST", "/intake", {"form_data": INTAKE_FORM}, expected_flow_status="order_created"),
        Step("POST", "/consultation", expected_flow_status="consultation_pending"),
        Step("POST", "/consultation/outcome", {"outcome": "approved"}, expected_flow_status="invoice_generated"),
        Step("POST", "/subscription/activate", expected_flow_status="subscription_active"),
        Step("POST", "/fulfillment", expected_flow_status="order_fulfilled"),
        Step("POST", "/complete", expected_flow_status="completed"),
      ],
    ),
    Scenario(
      name="One-Time Purchase",
      category_id="weight-mgmt",
      steps=[
        Step("POST", "/product", {"product_id": "nutrition-coaching"}, expected_flow_status="subscription_configured"),
        Step("POST", "/intake", {"form_data": INTAKE_FORM}, expected_flow_status="order_created"),
        Step("POST", "/consultation", expected_flow_status="consultation_pending"),
        Step("POST", "/consultation/outcome", {"outcome": "approved"}, expected_flow_status="invoice_generated"),
        Step("POST", "/fulfillment", expected_flow_status="order_fulfilled"),
        Step("POST", "/complete", expected_flow_status="completed"),
      ],
    ),
    Scenario(
      name="Incomplete Intake Then Rejected Consultation",
      category_id="weight-mgmt",
      steps=[
        Step("POST", "/product", {"product_id": "semaglutide-1", "subscription_duration_id": "quarterly"},
             expected_flow_status="subscription_configured"),
        Step("POST", "/intake", {"form_data": {"full_name": "Smoke Patient"}}, expected_status_code=422),
        Step("POST", "/intake", {"form_data": INTAKE_FORM}, expected_flow_status="order_created"),
        Step("POST", "/consultation", expected_flow_status="consultation_pending"),
        Step("POST", "/consultation/outcome", {"outcome": "rejected"}, expected_flow_status="cancelled"),
        Step("POST", "/cancel", {"reason": "retry"}, expected_flow_status="cancelled"),
      ],
    ),
  ]

  results: list[dict[str, Any]] = []

  with TestClient(backend_module.app) as client:
    for scenario in scenarios:
      scenario_result: dict[str, Any] = {"name": scenario.name, "steps": []}
      created = client.post("/flows", headers=headers, json={"category_id": scenario.category_id})
      if created.status_code != 201:
        scenario_result["pass"] = False
        scenario_result["error"] = f"POST /flows returned {created.status_code}"
        results.append(scenario_result)
        continue
      flow_id = created.json()["flow_id"]
      scenario_result["flow_id"] = flow_id

      failure: str | None = None
      for step in scenario.steps:
        response = client.request(step.method, f"/flows/{flow_id}{step.path}", headers=headers, json=step.body)
        try:
          body = response.json()
        except ValueError:
          body = {"raw": response.text[:500]}
        scenario_result["steps"].append(
          {
            "path": step.path,
            "status_code": response.status_code,
            "flow_status": body.get("status") if isinstance(body, dict) else None,
            "error": body.get("error") if isinstance(body, dict) else None,
          }
        )
        if response.status_code != step.expected_status_code:
          failure = f"{step.path}: expected HTTP {step.expected_status_code}, got {response.status_code}"
          break
        if step.expected_flow_status and body.get("status") != step.expected_flow_status:
          failure = f"{step.path}: expected status {step.expected_flow_status}, got {body.get('status')!r}"
          break

      audit = client.get(f"/flows/{flow_id}/audit", headers=headers)
      audit_rows = [json.loads(line) for line in audit.text.splitlines() if line.strip()]
      scenario_result["audit_trail"] = [f"{row['from_status']} -> {row['to_status']}" for row in audit_rows]
      if failure is None and [row["sequence"] for row in audit_rows] != list(range(1, len(audit_rows) + 1)):
        failure = "Audit sequence is not contiguous."

      scenario_result["pass"] = failure is None
      if failure:
        scenario_result["error"] = failure
      results.append(scenario_result)

  passed = sum(1 for item in results if item.get("pass"))
  failed = len(results) - passed
  timestamp = datetime.now(timezone.utc).isoformat()

  report_lines = [
    "# Flow E2E Smoke Report",
    "",
    f"- Timestamp (UTC): `{timestamp}`",
    f"- CAREFLOW_DB_PATH: `{os.getenv('CAREFLOW_DB_PATH')}`",
    f"- CAREFLOW_CATALOG_PATH: `{os.getenv('CAREFLOW_CATALOG_PATH') or 'built-in demo catalog'}`",
    f"- Total scenarios: `{len(results)}`",
    f"- Passed: `{passed}`",
    f"- Failed: `{failed}`",
    "",
    "## Scenario Results",
    "",
  ]

  for item in results:
    status = "PASS" if item.get("pass") else "FAIL"
    report_lines.append(f"### {status} - {item['name']}")
    report_lines.append(f"- Flow id: `{item.get('flow_id')}`")
    if item.get("error"):
      report_lines.append(f"- Error: `{item['error']}`")
    report_lines.append("- Steps:")
    report_lines.append("```json")
    report_lines.append(json.dumps(item.get("steps"), indent=2, ensure_ascii=True))
    report_lines.append("```")
    report_lines.append("- Audit trail:")
    for line in item.get("audit_trail") or []:
      report_lines.append(f"  - `{line}`")
    report_lines.append("")

  report_path = repo_root / "FLOW_E2E_SMOKE_REPORT.md"
  report_path.write_text("\n".join(report_lines), encoding="utf-8")
  print(f"Wrote report: {report_path}")
  print(f"Passed {passed}/{len(results)} scenarios.")

  return 0 if failed == 0 else 1


if __name__ == "__main__":
  raise SystemExit(run())
