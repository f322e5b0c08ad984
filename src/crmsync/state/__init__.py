"""State layer.

Watched collections and the policy that decides which fetch results and
change events reach them. Collections are only ever re-derived from the
store; change events never patch rows in place.
"""
