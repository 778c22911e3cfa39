"""HTTP API: manual submission, workflow status and manual triggers."""
