"""Control plane for a dedicated SRT streaming appliance."""
