"""Service layer - validation, profile merge, room and classroom managers."""
