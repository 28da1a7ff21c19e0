"""
Declarative enforcement package.

Holds the installed set of compiled redirect records. The runtime replaces
the whole set after every snapshot change.
"""
