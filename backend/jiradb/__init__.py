"""Jira issue mirror with an isolated storage worker."""
