"""Supporting services: snapshot cache."""
