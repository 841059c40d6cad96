"""
Bonding-curve pricing engine for token launches.
"""
