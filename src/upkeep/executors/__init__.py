"""Executors, one per task payload kind."""
