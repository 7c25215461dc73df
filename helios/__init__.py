"""helios: a supervised terminal coding agent."""
