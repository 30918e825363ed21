"""RelayApp wiring: the stdin resume trigger."""
import pytest

app_module = pytest.importorskip("voice_relay.app")

from voice_relay.config_models import AppConfig  # noqa: E402

from .conftest import feed, function_call_item  # noqa: E402


@pytest.fixture
def app():
    return app_module.RelayApp(AppConfig(openai_api_key="sk-test"))


@pytest.mark.parametrize("line", ["\n", "begin\n", "  BEGIN \n"])
def test_enter_or_begin_resumes_listening(app, line):
    app.session.set_listening(False)
    app.handle_command(line)
    assert app.session.listening


def test_unknown_command_keeps_microphone_muted(app):
    app.session.set_listening(False)
    app.handle_command("quit\n")
    assert not app.session.listening


async def test_stop_listening_tool_then_resume(transport, app):
    session = app.session
    session.transport = transport
    await session.start()
    try:
        feed(session, function_call_item("c1", "stopListening", "{}"))
        await session.wait_for_tools()
        assert not session.listening

        app.handle_command("\n")
        assert session.listening
    finally:
        await session.close()
