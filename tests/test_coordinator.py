"""
Coordinator boundary tests: action parsing, exit codes and validation
"""

import pytest

from mdsha.core.config import AgentConfig
from mdsha.core.errors import OcfExitCode, UnauthorizedError, UnreachableError
from mdsha.core.metrics import REGISTRY
from mdsha.failover.coordinator import (
    Demote,
    MetaData,
    Monitor,
    Notify,
    Promote,
    Start,
    Stop,
    Validate,
    dispatch,
    metadata_xml,
    parse_action,
)

from tests.conftest import FakeProcess, FakePromotionClient, ScriptedProber, node_status


# =============================================================================
# Action parsing
# =============================================================================


@pytest.mark.parametrize("name,expected", [
    ("start", Start()),
    ("stop", Stop()),
    ("monitor", Monitor()),
    ("status", Monitor()),
    ("promote", Promote()),
    ("demote", Demote()),
    ("validate-all", Validate()),
    ("meta-data", MetaData()),
])
def test_parse_simple_actions(name, expected):
    assert parse_action(name, environ={}) == expected


def test_parse_notify_reads_coordinator_environment():
    environ = {
        "OCF_RESKEY_CRM_meta_notify_type": "pre",
        "OCF_RESKEY_CRM_meta_notify_operation": "promote",
        "OCF_RESKEY_CRM_meta_notify_promote_uname": "mds-b ",
    }
    assert parse_action("notify", environ) == Notify(event="pre-promote", hint="mds-b")


def test_parse_notify_without_promoted_node():
    environ = {
        "OCF_RESKEY_CRM_meta_notify_type": "post",
        "OCF_RESKEY_CRM_meta_notify_operation": "demote",
    }
    assert parse_action("notify", environ) == Notify(event="post-demote", hint=None)


def test_parse_unknown_action():
    with pytest.raises(ValueError):
        parse_action("migrate_to", environ={})


# =============================================================================
# Dispatch
# =============================================================================


@pytest.mark.asyncio
@pytest.mark.parametrize("status,expected", [
    (node_status("master", "running", 3), OcfExitCode.RUNNING_MASTER),
    (node_status("shadow", "connected", 3), OcfExitCode.SUCCESS),
    (node_status("shadow", "disconnected", 0), OcfExitCode.SUCCESS),
])
async def test_monitor_exit_codes(make_controller, status, expected):
    controller = make_controller(ScriptedProber(status), attempts=1)
    assert await dispatch(controller, Monitor()) == expected


@pytest.mark.asyncio
async def test_monitor_not_running_exit_code(make_controller):
    controller = make_controller(ScriptedProber(node_status("master", "running", 3)), FakeProcess(alive=False))
    assert await dispatch(controller, Monitor()) == OcfExitCode.NOT_RUNNING


@pytest.mark.asyncio
async def test_monitor_failed_master_exit_code(make_controller, tmp_path):
    data = tmp_path / "data"
    data.mkdir()
    (data / "metadata.mfs.lock").write_text("")
    controller = make_controller(ScriptedProber(node_status("master", "running", 3)), FakeProcess(alive=False))
    assert await dispatch(controller, Monitor()) == OcfExitCode.FAILED_MASTER


@pytest.mark.asyncio
async def test_errors_become_exit_codes(make_controller):
    controller = make_controller(ScriptedProber(node_status("shadow", "running", 3)))
    assert await dispatch(controller, Monitor()) == OcfExitCode.ERR_GENERIC

    controller = make_controller(ScriptedProber(UnreachableError("refused")))
    assert await dispatch(controller, Monitor()) == OcfExitCode.ERR_GENERIC

    controller = make_controller(ScriptedProber(node_status("shadow", "connected", 3)), FakeProcess(alive=False))
    assert await dispatch(controller, Promote()) == OcfExitCode.ERR_GENERIC


@pytest.mark.asyncio
async def test_unexpected_exception_is_contained(make_controller):
    controller = make_controller(ScriptedProber(RuntimeError("boom")))
    assert await dispatch(controller, Monitor()) == OcfExitCode.ERR_GENERIC


@pytest.mark.asyncio
async def test_dispatch_counts_actions(make_controller):
    labels = {"action": "promote", "exit_code": str(OcfExitCode.SUCCESS)}
    before = REGISTRY.get_sample_value("mdsha_agent_actions_total", labels) or 0
    controller = make_controller(ScriptedProber(node_status("master", "running", 3)))
    assert await dispatch(controller, Promote()) == OcfExitCode.SUCCESS
    assert REGISTRY.get_sample_value("mdsha_agent_actions_total", labels) == before + 1


@pytest.mark.asyncio
async def test_notify_dispatch(make_controller, overlay):
    process = FakeProcess()
    controller = make_controller(ScriptedProber(node_status("shadow", "connected", 3)), process)
    assert await dispatch(controller, Notify(event="pre-promote", hint="mds-b")) == OcfExitCode.SUCCESS
    assert overlay.read().master_host == "mds-b"


@pytest.mark.asyncio
async def test_action_without_controller_is_not_configured():
    assert await dispatch(None, Start()) == OcfExitCode.ERR_CONFIGURED


# =============================================================================
# meta-data / validate-all
# =============================================================================


@pytest.mark.asyncio
async def test_meta_data_prints_descriptor(capsys):
    assert await dispatch(None, MetaData()) == OcfExitCode.SUCCESS
    out = capsys.readouterr().out
    assert out.startswith('<?xml version="1.0"?>')
    assert '<parameter name="connect_retries"' in out
    assert '<action name="promote"' in out


def test_meta_data_lists_every_parameter():
    xml = metadata_xml()
    for name in AgentConfig.model_fields:
        assert f'<parameter name="{name}"' in xml


@pytest.fixture
def valid_config(base_config, tmp_path):
    return AgentConfig(config_file=base_config, data_dir=tmp_path / "data", master_binary="sh")


@pytest.mark.asyncio
async def test_validate_accepts_sane_config(valid_config):
    assert await dispatch(None, Validate(), valid_config) == OcfExitCode.SUCCESS


@pytest.mark.asyncio
async def test_validate_missing_base_config(valid_config, tmp_path):
    config = valid_config.model_copy(update={"config_file": tmp_path / "missing.cfg"})
    assert await dispatch(None, Validate(), config) == OcfExitCode.ERR_CONFIGURED


@pytest.mark.asyncio
async def test_validate_missing_binary(valid_config):
    config = valid_config.model_copy(update={"master_binary": "mdsha-no-such-binary"})
    assert await dispatch(None, Validate(), config) == OcfExitCode.ERR_INSTALLED


@pytest.mark.asyncio
async def test_validate_missing_admin_tool_in_porcelain_mode(valid_config):
    config = valid_config.model_copy(update={"probe_mode": "porcelain", "admin_binary": "mdsha-no-such-tool"})
    assert await dispatch(None, Validate(), config) == OcfExitCode.ERR_INSTALLED


@pytest.mark.asyncio
async def test_validate_unknown_user(valid_config):
    config = valid_config.model_copy(update={"user": "mdsha-no-such-user"})
    assert await dispatch(None, Validate(), config) == OcfExitCode.ERR_CONFIGURED


@pytest.mark.asyncio
async def test_validate_without_config():
    assert await dispatch(None, Validate()) == OcfExitCode.ERR_CONFIGURED


@pytest.mark.asyncio
async def test_promotion_outcomes_become_exit_codes(make_controller):
    controller = make_controller(ScriptedProber(node_status("shadow", "connected", 42)),
                                 promotion=FakePromotionClient(UnauthorizedError("bad digest")))
    assert await dispatch(controller, Promote()) == OcfExitCode.ERR_PERM

    controller = make_controller(ScriptedProber(node_status("shadow", "connected", 42)), secret=None)
    assert await dispatch(controller, Promote()) == OcfExitCode.ERR_CONFIGURED
