"""Note triage pipeline: extraction, organization, and review resolution."""
