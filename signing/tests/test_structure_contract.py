"""Structure contract tests for the signing feature."""
from __future__ import annotations

from pathlib import Path


def test_structure_contract() -> None:
    """Fail if required scaffold files are missing."""
    root = Path(__file__).resolve().parents[1]
    required = [
        root / "enum" / "document_status.py",
        root / "enum" / "recipient_status.py",
        root / "enum" / "field_type.py",
        root / "enum" / "audit_action.py",
        root / "models" / "document.py",
        root / "models" / "field_values.py",
        root / "adapters" / "storage_adapter.py",
        root / "adapters" / "signature_adapter.py",
        root / "adapters" / "event_sink.py",
        root / "repository" / "signing_repository.py",
        root / "logic" / "workflow_engine.py",
        root / "logic" / "workflow_service.py",
        root / "logic" / "composition_engine.py",
        root / "logic" / "job_runner.py",
        root / "services" / "issuer_service.py",
        root / "services" / "recipient_service.py",
        root / "exceptions" / "errors.py",
        root / "tests" / "test_structure_contract.py",
        root / "tests" / "test_workflow.py",
        root / "tests" / "test_scenarios.py",
    ]
    missing = [path for path in required if not path.exists()]
    assert not missing, f"Missing required files: {missing}"
