import json
import logging
import os
from typing import Any

from .config import RunConfig
from .histogram import Histogram
from .models import RunReport

logger = logging.getLogger(__name__)


class ReportStore:
    """JSON snapshot of a run: output record, config and histogram buckets."""

    def __init__(self, path: str = "openloop_report.json"):
        self.path = path

    def save_report(self, report: RunReport, config: RunConfig | None = None) -> bool:
        state: dict[str, Any] = {
            "report": report.to_dict(),
            "config": config.to_dict() if config else None,
            "histograms": {},
        }
        if report.raw_histogram is not None:
            state["histograms"]["raw"] = report.raw_histogram.to_dict()
        if report.corrected_histogram is not None:
            state["histograms"]["corrected"] = report.corrected_histogram.to_dict()
        try:
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2)
            logger.info(f"Report saved to {self.path}")
            return True
        except OSError as e:
            logger.error(f"Failed to save report: {e}")
            return False

    def load(self) -> dict[str, Any]:
        if not os.path.exists(self.path):
            logger.info(f"No report found at {self.path}")
            return {}
        with open(self.path, encoding="utf-8") as f:
            return json.load(f)

    def load_histograms(self) -> dict[str, Histogram]:
        state = self.load()
        histograms = {
            name: Histogram.from_dict(data)
            for name, data in state.get("histograms", {}).items()
        }
        logger.info(f"Loaded {len(histograms)} histograms from {self.path}")
        return histograms
