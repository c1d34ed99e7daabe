"""Location acquisition: caching, strategy selection and privacy protection."""
