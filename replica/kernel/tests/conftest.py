"""
Replica kernel test configuration.

Kernel tests are synchronous and need no store, feed, or event loop.
"""
