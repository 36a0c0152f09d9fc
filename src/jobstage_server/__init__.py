"""jobstage_server: FastAPI REST API for the stage workflow SDK.

Exposes ``StageWorkflow`` as a stateless HTTP API: stage graph editing,
answer submission with automatic transitions, the admin approval queue,
and template provisioning.
"""
