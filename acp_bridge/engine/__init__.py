"""Engine package - agent process supervision, configuration and errors."""
