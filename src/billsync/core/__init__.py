"""Settings, logging, wiring and the command line interface."""
