"""Credential pool core.

Pool membership and selection, the health state machine, the usage cache,
background schedulers and the retrying request dispatcher.  Import from the
submodules directly; ``ports.outbound`` depends on ``types`` and this
package must stay import-free to avoid a cycle.
"""
