"""Pure lifecycle rules: transitions, hostname policy, drift and draft expiry."""
