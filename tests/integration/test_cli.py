import asyncio

import pytest
import yaml
from typer.testing import CliRunner

import crmflow.persistence as persistence
from crmflow.cli import app
from crmflow.persistence import InMemoryWorkflowRepository

runner = CliRunner()


@pytest.fixture(autouse=True)
def repo(monkeypatch, tmp_path):
    monkeypatch.delenv("CRMFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("CRMFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    repo = InMemoryWorkflowRepository()
    persistence._repository_instance = repo
    yield repo
    persistence.reset_repository()


@pytest.fixture
def entities_file(tmp_path):
    path = tmp_path / "entities.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "contact": {
                    "c1": {"email": "one@example.com", "firstName": "One", "company": "Acme"},
                    "c2": {"email": "two@example.com", "firstName": "Two", "company": "Acme"},
                    "silent": {"firstName": "Silent"},
                }
            }
        )
    )
    return path


def _definition(tmp_path, steps, name="Drip"):
    path = tmp_path / f"{name.lower()}.yaml"
    path.write_text(yaml.safe_dump({"name": name, "steps": [s.model_dump(mode="json") for s in steps]}))
    return path


def _invoke(*args):
    return runner.invoke(app, [str(a) for a in args])


def _created_id(result):
    assert result.exit_code == 0, f"Command failed with exit code {result.exit_code}. Output: {result.stdout}"
    line = next(l for l in result.stdout.splitlines() if l.startswith("Created workflow"))
    return line.split()[2]


def test_template_commands(repo):
    listed = _invoke("template", "list")
    assert listed.exit_code == 0
    assert "welcome-new-contacts\tonboarding\tWelcome New Contacts" in listed.stdout

    used = _invoke("template", "use", "welcome-new-contacts", "--name", "Onboarding")
    workflow_id = _created_id(used)
    assert f"Created workflow {workflow_id} from welcome-new-contacts" in used.stdout

    workflow = asyncio.run(repo.get_workflow(workflow_id))
    assert workflow.name == "Onboarding"
    assert workflow.workspace_id == "default"

    shown = _invoke("workflow", "show", workflow_id)
    assert shown.exit_code == 0
    assert f"Workflow {workflow_id}: Onboarding [draft] v1" in shown.stdout
    assert "Trigger: contact_created on contact" in shown.stdout
    assert "Send Welcome Email" in shown.stdout

    unknown = _invoke("template", "use", "nope")
    assert unknown.exit_code == 1
    assert "Template nope not found" in unknown.stdout


def test_workflow_list_and_missing(repo):
    assert "No workflows found" in _invoke("workflow", "list").stdout

    _created_id(_invoke("template", "use", "re-engagement"))
    listed = _invoke("workflow", "list")
    assert "\tdraft\tRe-engagement Campaign\tenrolled=0" in listed.stdout

    missing = _invoke("workflow", "show", "missing-id")
    assert missing.exit_code == 1
    assert "Workflow missing-id not found" in missing.stdout


def test_import_validate_activate_enroll_and_process(repo, tmp_path, drip_steps, entities_file):
    workflow_id = _created_id(_invoke("workflow", "import", _definition(tmp_path, drip_steps)))

    assert "Workflow is valid" in _invoke("workflow", "validate", workflow_id).stdout
    activated = _invoke("workflow", "activate", workflow_id)
    assert f"Workflow {workflow_id}: active" in activated.stdout

    enrolled = _invoke("workflow", "enroll", workflow_id, "c1", "c2", "ghost", "--entities", entities_file)
    assert enrolled.exit_code == 0
    assert "Enrolled 2, skipped 0, failed 1" in enrolled.stdout
    assert "ghost: contact ghost not found" in enrolled.stdout

    listed = _invoke("enrollment", "list", workflow_id)
    assert "2 of 2" in listed.stdout
    assert "contact:c1\tactive\twelcome" in listed.stdout

    assert "Pending: 2" in _invoke("scheduler", "status").stdout
    processed = _invoke("scheduler", "process", "--entities", entities_file)
    assert processed.exit_code == 0
    assert "Processed 2 enrollments" in processed.stdout
    assert "Pending: 0" in _invoke("scheduler", "status").stdout

    funnel = _invoke("workflow", "funnel", workflow_id)
    lines = funnel.stdout.strip().splitlines()
    assert lines[0] == "step\tentered\tcompleted\tfailed\tdropoff"
    assert "Welcome\t2\t2\t0\t0" in lines

    paused = _invoke("workflow", "pause", workflow_id)
    assert f"Workflow {workflow_id}: paused" in paused.stdout
    assert f"Workflow {workflow_id}: active" in _invoke("workflow", "resume", workflow_id).stdout


def test_import_missing_path(tmp_path):
    result = _invoke("workflow", "import", tmp_path / "nope.yaml")
    assert result.exit_code == 1
    assert "Specified path does not exist" in result.stdout


def test_validate_reports_fatal_errors(tmp_path, drip_steps):
    workflow_id = _created_id(_invoke("workflow", "import", _definition(tmp_path, drip_steps[1:], name="Broken")))
    result = _invoke("workflow", "validate", workflow_id)
    assert result.exit_code == 1
    assert "error: missing_trigger" in result.stdout

    activation = _invoke("workflow", "activate", workflow_id)
    assert activation.exit_code == 1
    assert "Workflow graph is invalid" in activation.stdout


def test_workflow_test_command(tmp_path, drip_steps, entities_file):
    workflow_id = _created_id(_invoke("workflow", "import", _definition(tmp_path, drip_steps)))

    result = _invoke("workflow", "test", workflow_id, "c1", "--entities", entities_file)
    assert result.exit_code == 0
    assert "Would send email 'Welcome to Acme' to one@example.com" in result.stdout
    assert "Final status: completed" in result.stdout

    failing = _invoke("workflow", "test", workflow_id, "silent", "--live", "--entities", entities_file)
    assert failing.exit_code == 1
    assert "Final status: failed" in failing.stdout


def test_failed_enrollment_show_and_retry(tmp_path, drip_steps, entities_file):
    workflow_id = _created_id(_invoke("workflow", "import", _definition(tmp_path, drip_steps)))
    _invoke("workflow", "activate", workflow_id)
    _invoke("workflow", "enroll", workflow_id, "silent", "--entities", entities_file)
    _invoke("scheduler", "process", "--entities", entities_file)

    listed = _invoke("enrollment", "list", workflow_id, "--status", "failed")
    row = next(l for l in listed.stdout.splitlines() if "\tcontact:silent\t" in l)
    enrollment_id = row.split("\t")[0]

    shown = _invoke("enrollment", "show", enrollment_id)
    assert f"Enrollment {enrollment_id}: failed" in shown.stdout
    assert "Last error:" in shown.stdout
    assert "- Welcome: failed" in shown.stdout

    retried = _invoke("enrollment", "retry", enrollment_id)
    assert retried.exit_code == 0
    assert f"Enrollment {enrollment_id}: active at welcome" in retried.stdout

    again = _invoke("enrollment", "retry", enrollment_id)
    assert again.exit_code == 1
    assert "only failed enrollments can be retried" in again.stdout
