"""imgforge backend: build/flash job orchestration and log streaming."""
