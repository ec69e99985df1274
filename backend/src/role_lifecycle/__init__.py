"""Role lifecycle service: temporal role grants with last-admin protection."""
