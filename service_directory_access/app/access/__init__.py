"""
Access entitlement package.

Defines the access record model and the engine that classifies records
and computes administrative transitions:

- models: AccessRecord, status enums, request/response schemas.
- engine: Classification, list filters, and the approve/deny/revoke
  state machine.

The engine never performs I/O; the service layer pairs it with a store.
"""
