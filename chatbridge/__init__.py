"""Chat bridge: drive Claude agent sessions from chat channels and threads."""
