"""Task model, graph building, scheduling and reporting."""
