from quotasync.models import Base, Case, Patient, SyncRun


def test_patient_full_name():
    assert Patient(first_name="Ada", last_name="Lovelace").full_name == "Ada Lovelace"
    assert Patient(first_name="Ada", last_name=None).full_name == "Ada"
    assert Patient(first_name=None, last_name=None).full_name == "Unknown"


def test_case_override_flag():
    assert Case(status="pending").is_overridden
    assert Case(status="archived").is_overridden
    assert not Case(status="critical").is_overridden


def test_expected_tables_registered():
    assert {
        "clinics",
        "pms_credentials",
        "patients",
        "appointments",
        "cases",
        "sync_runs",
    } <= set(Base.metadata.tables)


def test_single_running_sync_run_index_is_partial():
    indexes = {index.name: index for index in SyncRun.__table__.indexes}

    running = indexes["uq_sync_runs_running"]
    assert running.unique
    assert running.dialect_options["postgresql"]["where"] is not None
