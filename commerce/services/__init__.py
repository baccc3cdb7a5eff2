"""Business services. Each one owns its tables and talks to others through their APIs or events."""
