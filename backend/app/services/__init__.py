"""
Engine services.

- Take a Session, ids and an Actor; never HTTP request objects
- Raise EngineError subclasses (engine_errors) on every rejected operation
- Write matches only through the version compare-and-swap in utils.version_guards
"""
