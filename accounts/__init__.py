"""accounts/ -- Users, login tickets, session tokens and one-time codes for IDecs.

Layer rule: accounts/ imports only core/, stdlib and third-party libraries.
It does NOT import from api/, web/, sso/, or nav/.
api/, web/ and sso/ import from accounts/, not the other way around.
"""
