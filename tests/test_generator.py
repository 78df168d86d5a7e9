import pytest

from testweaver.constants import SELECTOR_SYNONYMS
from testweaver.errors import GenerationError
from testweaver.models.run import RunConfig
from testweaver.models.step import Step
from testweaver.scripting.generator import (
    function_name_for,
    generate,
    generate_from_instructions,
    parse_duration_ms,
    step_code,
)

LOGIN = "1. Navigate to https://x.test/login\n2. Click the login button"


def test_login_scenario_script():
    script = generate_from_instructions("login flow", LOGIN)
    login = SELECTOR_SYNONYMS["login button"]

    assert script.count("page.goto(") == 1
    assert "page.goto('https://x.test/login')" in script
    assert f"page.click({login!r})" in script
    assert f"page.wait_for_selector({login!r}, state=\"visible\")" in script
    assert "# Step 1: Navigate to https://x.test/login" in script
    assert "# Step 2: Click the login button" in script


def test_script_layout():
    script = generate_from_instructions("Login flow", LOGIN)

    assert script.startswith('"""Generated by testweaver."""')
    assert "from playwright.sync_api import Page, expect" in script
    assert "def test_login_flow(page: Page):\n    'Login flow'\n" in script
    assert "class AuthHelper" not in script
    compile(script, "test_login_flow.py", "exec")


def test_hostile_text_still_compiles():
    instructions = "\n".join(
        [
            "Navigate to https://a.test/?q=\"x\"&y='z'",
            'Type "O\'Brien \\ co" into the name field',
            "Check that the banner contains \"It's 100% \\\\ ok\"",
            "Click the \"Don't stop\" button",
            "Do something ''' weird \"\"\"",
        ]
    )
    script = generate_from_instructions("it's \"quoted\"", instructions)
    compile(script, "test_hostile.py", "exec")


def test_empty_steps_raise():
    with pytest.raises(GenerationError, match="No test steps provided"):
        generate("nothing", [])
    with pytest.raises(GenerationError):
        generate_from_instructions("nothing", "   ")


def test_function_name_for():
    assert function_name_for("Checkout: happy path!") == "test_checkout_happy_path"
    assert function_name_for("") == "test_generated"


@pytest.mark.parametrize(
    "value, expected",
    [("2 seconds", 2000), ("500ms", 500), ("1.5 s", 1500), ("3", 3), (None, 1000), ("soon", 1000)],
)
def test_parse_duration_ms(value, expected):
    assert parse_duration_ms(value) == expected


def test_wait_steps():
    assert step_code(Step(index=1, action="wait", value="2 seconds")) == ["page.wait_for_timeout(2000)"]
    assert step_code(Step(index=1, action="wait", target="element", value="#results")) == [
        "page.wait_for_selector('#results', state=\"visible\")"
    ]


def test_verify_steps():
    visible = step_code(Step(index=1, action="verify", target="#banner", assertion="visible"))
    assert visible == ["expect(page.locator('#banner').first).to_be_visible()"]

    text = step_code(Step(index=1, action="verify", target="#title", value="Dashboard", assertion="text"))
    assert text == ["expect(page.locator('#title').first).to_contain_text('Dashboard')"]


def test_interactions_without_pre_wait():
    assert step_code(Step(index=1, action="hover", target="#menu")) == ["page.hover('#menu')"]
    assert step_code(Step(index=1, action="select", target="#country", value="CA")) == [
        "page.select_option('#country', 'CA')"
    ]
    assert step_code(Step(index=1, action="fill", target="#q", value="shoes")) == [
        "page.fill('#q', 'shoes')"
    ]


def test_press_screenshot_and_custom():
    assert step_code(Step(index=1, action="pressKey", value="Enter")) == ["page.keyboard.press('Enter')"]

    shot = step_code(Step(index=3, action="screenshot"))
    assert shot[0] == 'Path("artifacts/screenshots").mkdir(parents=True, exist_ok=True)'
    assert 'path=f"artifacts/screenshots/step-3-{int(time.time() * 1000)}.png"' in shot[1]

    custom = step_code(Step(index=1, action="custom", target="Do a barrel roll"))
    assert custom == ["# Custom action, not automated: Do a barrel roll"]


def test_mapping_steps_and_aliases():
    assert step_code({"action": "goto", "target": "https://a.test"}) == ["page.goto('https://a.test')"]
    assert step_code({"action": "press", "value": "Tab"}) == ["page.keyboard.press('Tab')"]
    assert step_code({"action": "press", "value": "esc"}) == ["page.keyboard.press('Escape')"]
    assert step_code({"action": "teleport", "target": "moon"}) == ["# Unsupported action 'teleport': moon"]


def test_malformed_step_degrades_to_placeholder():
    script = generate("broken", [{"index": 1, "action": "click"}, {"index": 2, "action": "navigate", "target": "https://a.test"}])

    assert "# Could not generate step: cannot resolve a selector without a target" in script
    assert "page.goto('https://a.test')" in script
    compile(script, "test_broken.py", "exec")


def test_bearer_and_basic_auth():
    steps = [Step(index=1, action="navigate", target="https://a.test")]

    bearer = generate("auth", steps, RunConfig.model_validate({"authSpec": {"type": "bearer", "token": "tok"}}))
    assert "page.set_extra_http_headers({'Authorization': 'Bearer tok'})" in bearer

    basic = generate(
        "auth", steps, RunConfig(auth_spec={"kind": "basic", "username": "user", "password": "pass"})
    )
    assert "page.set_extra_http_headers({'Authorization': 'Basic dXNlcjpwYXNz'})" in basic


def test_cookie_auth():
    steps = [Step(index=1, action="navigate", target="https://a.test")]
    cookies = [{"name": "sid", "value": "abc", "url": "https://a.test"}]
    script = generate("auth", steps, RunConfig(auth_spec={"kind": "cookies", "cookies": cookies}))
    assert f"page.context.add_cookies({cookies!r})" in script


def test_custom_headers_use_auth_helper():
    steps = [Step(index=1, action="navigate", target="https://a.test")]
    config = RunConfig(
        custom_headers={"X-Env": "test"}, auth_spec={"kind": "bearer", "token": "tok"}
    )
    script = generate("helper", steps, config)

    assert "class AuthHelper:" in script
    assert "    auth_helper = AuthHelper(page)" in script
    assert "auth_helper.set_auth_headers({'X-Env': 'test'})" in script
    assert "auth_helper.set_auth_headers({'Authorization': 'Bearer tok'})" in script
    assert script.index("AuthHelper(page)") < script.index("# Step 1:")
    compile(script, "test_helper.py", "exec")


def test_bare_key_names_are_normalized():
    assert generate_from_instructions("keys", "press tab").count("page.keyboard.press('Tab')") == 1
    assert step_code(Step(index=1, action="pressKey", value="page down")) == ["page.keyboard.press('PageDown')"]
    assert step_code(Step(index=1, action="pressKey", value="Control+A")) == ["page.keyboard.press('Control+A')"]
