"""HTTP control surface for the gateway."""
