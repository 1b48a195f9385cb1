"""AdMirror command line interface."""
