"""Song generation orchestrator: scheduling loop, stage processors and recovery."""
