"""
Layered configuration for the bridge.

The packaged bridge.default.cfg is overlaid with the platform flavor, the user's
~/.remotebridge.cfg and an optional file named on the command line. The result is
validated against bridge.schema.cfg.
"""
