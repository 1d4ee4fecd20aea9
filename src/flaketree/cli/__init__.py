"""flaketree command line interface."""
