"""
GameLib application package.

Layered the same way throughout:

  gamelib/models.py: plain domain records (platforms, entries, results).
  gamelib/errors.py: the error taxonomy shared by adapters and services.
  gamelib/repositories/: pure I/O: SQL storage and the JSON identity cache.
  gamelib/services/: identity resolution, reconciliation, sync orchestration,
      validation and eligibility rules.

Top-level modules (``platform_clients``, ``catalog_client``, ``database``,
``gamelib_web``, ``gamelib_cli``) build these objects and pass them to each
other explicitly; nothing in this package holds global state.
"""
