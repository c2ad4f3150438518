def test_imports_compile():
    # Contracts + hashing + settings
    from disclosure_engine.contracts import ConflictAlert, ThresholdRule  # noqa: F401
    from disclosure_engine.hashing import alert_key, trigger_key  # noqa: F401
    from disclosure_engine.settings import load_settings  # noqa: F401

    # DB layer imports
    from disclosure_engine.db.models import ConflictAlertRecord, ThresholdRuleRecord  # noqa: F401
    from disclosure_engine.db.session import get_session  # noqa: F401
    from disclosure_engine.db.repo import insert_alerts, insert_trigger_logs  # noqa: F401

    # Engine entry points
    from disclosure_engine.evaluation import evaluate_submission  # noqa: F401
    from disclosure_engine.cli import app  # noqa: F401

    assert ConflictAlert is not None and ThresholdRule is not None
    assert ConflictAlertRecord is not None and ThresholdRuleRecord is not None
    assert callable(load_settings)
    assert callable(get_session)
    assert callable(insert_alerts)
    assert callable(evaluate_submission)


def test_partial_unique_index_declared():
    from disclosure_engine.db.models import ConflictExclusionRecord

    index = next(i for i in ConflictExclusionRecord.__table__.indexes if i.name == "uq_conflict_exclusions_active")
    assert index.unique is True
    assert [c.name for c in index.columns] == ["organization_id", "person_id", "entity_key", "conflict_type"]
