"""nestlambda command line interface."""
