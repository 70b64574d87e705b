"""Automated review of execution results: quality scoring, risk assessment, approval."""
