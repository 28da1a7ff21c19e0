"""
Storage package for the Redirector Service.

Provides the persisted snapshot store: a local JSON file tier and an
optional Redis tier used when the snapshot is marked for synchronization.
Every save notifies subscribers so the runtime can rebuild its snapshot and
recompile declarative rules.
"""
