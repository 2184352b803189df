"""Gmail provider integration: REST client, credential refresh, and gateway."""
