"""auth/ -- The login core for Gatehouse.

Challenge gate, credential and federated verification, first-use
provisioning, single-active-session issuing and the termination signals the
login boundary reads.

Layer rule: auth/ imports stdlib, third-party libraries and core/ only.
It does NOT import from api/. api/ and main.py import from auth/, not the
other way around.
"""
