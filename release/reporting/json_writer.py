import json
from pathlib import Path

from engine.scheduler.report import PipelineReport
from release.reporting.exceptions import ReportIOError


def write_json_report(report: PipelineReport, output_path: str) -> str:
    """
    Write the canonical JSON run report.

    Task logs inside the report are already masked by the executor.
    """

    out = Path(output_path)

    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        with out.open("w", encoding="utf-8") as f:
            json.dump(report.to_dict(), f, indent=2, ensure_ascii=False)
            f.write("\n")
    except (OSError, TypeError, ValueError) as exc:
        raise ReportIOError(str(exc)) from exc

    return str(out)
