# pipeline/__init__.py
# ============================================================================
# BILLING RECONCILIATION SERVICE — RECONCILIATION PIPELINE
# ============================================================================
# Import from the submodules directly:
#   pipeline.authenticator   gateway signature verification
#   pipeline.transitions     status transition guard
#   pipeline.reconciliation  coordinator
#   pipeline.errors          error taxonomy
# ============================================================================
