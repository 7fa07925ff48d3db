"""Built-in CLI commands for authbroker."""
