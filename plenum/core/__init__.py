"""
Core engine components for Plenum.

The modules in this subpackage are layered leaf to root: ``types`` and
``errors`` have no internal dependencies, ``cell`` and ``fabric`` hold
state, ``constraints``, ``redistribution`` and ``transport`` implement
the per-process engines, ``ledger`` verifies conservation and
``simulation`` composes everything into a timestep.
"""
