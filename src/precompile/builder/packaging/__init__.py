"""Package declarations: reading, dependency resolution and the build run loop."""
