"""HTTP proxy server and command-line interface."""
