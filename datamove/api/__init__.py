"""HTTP API for starting and inspecting data-move runs."""
