"""Run orchestration, progress log and reports."""
