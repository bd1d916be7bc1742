import pytest

import batch_imapsync as bi


def make_job(identity: str, source_password: str = "src-secret", dest_password: str = "dst-secret") -> bi.Job:
    return bi.Job(
        source_host="old.example.com",
        source_credential=bi.Credential(email=identity, password=source_password),
        dest_host="new.example.com",
        dest_credential=bi.Credential(email=identity.replace("@old", "@new"), password=dest_password),
    )


@pytest.fixture
def job() -> bi.Job:
    return make_job("alice@old.example.com")


@pytest.fixture(autouse=True)
def _no_report_file():
    yield
    bi.close_report_file()
