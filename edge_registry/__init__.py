"""Edge handler registry: persistence, deploy/test orchestration and the HTTP API."""
