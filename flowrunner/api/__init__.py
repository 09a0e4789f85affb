"""HTTP API for executing and inspecting workflows."""
