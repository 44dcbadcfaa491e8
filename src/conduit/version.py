"""Harness version.

HARNESS_VERSION is advertised as the server version by protocol servers
created without an explicit version. Bump it when the wire-visible
behaviour (tool set, server info) changes.
"""

HARNESS_VERSION = "1.0.0"
