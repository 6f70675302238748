"""Run reporting."""

from reporting.report import NodeResult, RunReport

__all__ = ["NodeResult", "RunReport"]
