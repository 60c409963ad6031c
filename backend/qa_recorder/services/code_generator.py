"""
Code Generator - Compiles an ordered step sequence into runnable test source.

Pure: no I/O, no clock, no random identifiers. The same steps and options
always produce byte-identical output.

Targets:
- typescript / javascript: playwright-test, playwright, cypress
- python: pytest (pytest-playwright ``page`` fixture), playwright (async script)
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from qa_recorder.errors import InvalidInputError, UnsupportedActionError
from qa_recorder.schemas import CodeGenerationOptions

FRAMEWORKS = {
    "typescript": ("playwright-test", "playwright", "cypress"),
    "javascript": ("playwright-test", "playwright", "cypress"),
    "python": ("pytest", "playwright"),
}
# "playwright-test" is the default framework; for Python it means the pytest plugin
FRAMEWORK_ALIASES = {("python", "playwright-test"): "pytest"}

DEFAULT_TEST_NAME = "Generated Test"

# Actions that cannot be emitted without a target element
SELECTOR_ACTIONS = ("click", "type", "select", "hover", "verify")

_HAS_TEXT = re.compile(r'^([a-z][a-z0-9]*):has-text\((".*")\)$')


@dataclass
class GeneratedCode:
    test_code: str
    imports: list[str]
    test_name: str
    language: str
    framework: str
    step_count: int = 0


@dataclass
class _Emitter:
    """Accumulates indented source lines."""

    comment: str
    lines: list[str] = field(default_factory=list)

    def line(self, indent: str, text: str = "") -> None:
        self.lines.append(f"{indent}{text}" if text else "")

    def note(self, indent: str, text: str) -> None:
        self.lines.append(f"{indent}{self.comment} {_one_line(text)}")


def sanitize_test_name(name: str | None) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9\s]", "", name or "")
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned or DEFAULT_TEST_NAME


def to_camel_case(name: str) -> str:
    words = re.findall(r"[A-Za-z0-9]+", name)
    if not words:
        return "generatedTest"
    camel = words[0].lower() + "".join(word[:1].upper() + word[1:] for word in words[1:])
    return f"test{camel[:1].upper()}{camel[1:]}" if camel[0].isdigit() else camel


def to_snake_case(name: str) -> str:
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", name)
    words = re.findall(r"[A-Za-z0-9]+", spaced)
    snake = "_".join(word.lower() for word in words) or "generated_test"
    return f"test_{snake}" if snake[0].isdigit() else snake


def resolve_target(options: CodeGenerationOptions) -> tuple[str, str]:
    """Validated (language, framework) pair."""
    language = options.language.lower()
    if language not in FRAMEWORKS:
        raise InvalidInputError(
            f"Unsupported language: {options.language}",
            {"supported": sorted(FRAMEWORKS)},
        )
    framework = options.framework.lower()
    framework = FRAMEWORK_ALIASES.get((language, framework), framework)
    if framework not in FRAMEWORKS[language]:
        raise InvalidInputError(
            f"Unsupported framework for {language}: {options.framework}",
            {"supported": list(FRAMEWORKS[language])},
        )
    return language, framework


def build_imports(language: str, framework: str) -> list[str]:
    if language == "python":
        if framework == "pytest":
            return ["from playwright.sync_api import Page, expect"]
        return ["import asyncio", "", "from playwright.async_api import async_playwright, expect"]

    if framework == "cypress":
        return ['/// <reference types="cypress" />'] if language == "typescript" else []
    if language == "javascript":
        if framework == "playwright-test":
            return ["const { test, expect } = require('@playwright/test');"]
        return ["const { chromium } = require('playwright');"]
    if framework == "playwright-test":
        return ["import { test, expect } from '@playwright/test';"]
    return ["import { chromium } from 'playwright';"]


def _one_line(text: str | None) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def _literal(value: Any) -> str:
    """String literal valid in both JavaScript and Python."""
    return json.dumps("" if value is None else str(value))


def _scroll_position(value: str | None) -> tuple[int, int]:
    x, _, y = (value or "").partition(",")
    try:
        return int(float(x or 0)), int(float(y or 0))
    except ValueError:
        return 0, 0


def _wait_ms(value: str | None) -> int:
    return int(value) if value and value.isdigit() else 0


def _screenshot_file(step: Any, extension: bool = True) -> str:
    stem = f"step-{step.order_index + 1:03d}"
    return f"screenshots/{stem}.png" if extension else stem


def ordered_steps(steps: Iterable[Any], verified_only: bool = False) -> list[Any]:
    selected = [step for step in steps if step.user_verified or not verified_only]
    return sorted(selected, key=lambda step: step.order_index)


# ============================================
# Statements
# ============================================


def _page_statement(step: Any, language: str, framework: str) -> str:
    """One Playwright statement; ``await`` and ``;`` are added by the caller."""
    python = language == "python"
    selector = _literal(step.element_selector)
    value = _literal(step.value)
    action = step.action_type

    if action in SELECTOR_ACTIONS and not step.element_selector:
        raise UnsupportedActionError(step.order_index, action, framework, f"'{action}' step has no selector")
    if action == "navigate":
        return f"page.goto({_literal(step.value or step.page_url)})"
    if action == "click":
        return f"page.click({selector})"
    if action == "type":
        return f"page.fill({selector}, {value})"
    if action == "select":
        return f"page.{'select_option' if python else 'selectOption'}({selector}, {value})"
    if action == "hover":
        return f"page.hover({selector})"
    if action == "scroll":
        if step.element_selector:
            scroll = "scroll_into_view_if_needed" if python else "scrollIntoViewIfNeeded"
            return f"page.locator({selector}).{scroll}()"
        x, y = _scroll_position(step.value)
        if python:
            return f'page.evaluate("window.scrollTo({x}, {y})")'
        return f"page.evaluate(() => window.scrollTo({x}, {y}))"
    if action == "wait":
        if step.element_selector:
            return f"page.{'wait_for_selector' if python else 'waitForSelector'}({selector})"
        return f"page.{'wait_for_timeout' if python else 'waitForTimeout'}({_wait_ms(step.value)})"
    if action == "verify":
        if python:
            if step.value:
                return f"expect(page.locator({selector})).to_contain_text({value})"
            return f"expect(page.locator({selector})).to_be_visible()"
        if framework == "playwright-test":
            if step.value:
                return f"expect(page.locator({selector})).toContainText({value})"
            return f"expect(page.locator({selector})).toBeVisible()"
        if step.value:
            return f"page.locator({selector}).filter({{ hasText: {value} }}).waitFor()"
        return f"page.waitForSelector({selector}, {{ state: 'visible' }})"
    raise UnsupportedActionError(step.order_index, action, framework)


def _cypress_subject(step: Any) -> str:
    selector = step.element_selector or ""
    match = _HAS_TEXT.match(selector)
    if match:
        return f"cy.contains({_literal(match.group(1))}, {match.group(2)})"
    if not selector:
        raise UnsupportedActionError(
            step.order_index, step.action_type, "cypress", f"'{step.action_type}' step has no selector"
        )
    if selector.startswith(("xpath=", "text=", "role=")):
        raise UnsupportedActionError(step.order_index, step.action_type, "cypress")
    return f"cy.get({_literal(selector)})"


def _cypress_statement(step: Any) -> str:
    action = step.action_type
    value = _literal(step.value)

    if action == "navigate":
        return f"cy.visit({_literal(step.value or step.page_url)});"
    if action == "scroll" and not step.element_selector:
        x, y = _scroll_position(step.value)
        return f"cy.scrollTo({x}, {y});"
    if action == "wait" and not step.element_selector:
        return f"cy.wait({_wait_ms(step.value)});"
    if action == "hover":
        raise UnsupportedActionError(step.order_index, action, "cypress")

    subject = _cypress_subject(step)
    if action == "click":
        return f"{subject}.click();"
    if action == "type":
        return f"{subject}.clear().type({value});"
    if action == "select":
        return f"{subject}.select({value});"
    if action == "scroll":
        return f"{subject}.scrollIntoView();"
    if action == "wait":
        return f"{subject}.should('exist');"
    if action == "verify":
        if step.value:
            return f"{subject}.should('contain', {value});"
        return f"{subject}.should('be.visible');"
    raise UnsupportedActionError(step.order_index, action, "cypress")


def _step_statement(step: Any, language: str, framework: str) -> str:
    if framework == "cypress":
        return _cypress_statement(step)
    statement = _page_statement(step, language, framework)
    if language == "python":
        return statement if framework == "pytest" else f"await {statement}"
    return f"await {statement};"


def _screenshot_statement(step: Any, language: str, framework: str) -> str:
    if framework == "cypress":
        return f"cy.screenshot({_literal(_screenshot_file(step, extension=False))});"
    path = _literal(_screenshot_file(step))
    if language == "python":
        statement = f"page.screenshot(path={path})"
        return statement if framework == "pytest" else f"await {statement}"
    return f"await page.screenshot({{ path: {path} }});"


def _initial_navigation(base_url: str, language: str, framework: str) -> str:
    if framework == "cypress":
        return f"cy.visit({_literal(base_url)});"
    if language == "python":
        statement = f"page.goto({_literal(base_url)})"
        return statement if framework == "pytest" else f"await {statement}"
    return f"await page.goto({_literal(base_url)});"


def _emit_steps(
    out: _Emitter,
    steps: Sequence[Any],
    indent: str,
    language: str,
    framework: str,
    options: CodeGenerationOptions,
) -> None:
    if options.base_url:
        out.line(indent, _initial_navigation(options.base_url, language, framework))
        out.line(indent)

    for position, step in enumerate(steps):
        if options.include_comments:
            out.note(indent, f"Step {position + 1}: {step.natural_language}")
        alternatives = [alt for alt in (step.element_alternatives or []) if alt != step.element_selector]
        if alternatives:
            out.note(indent, f"Alternative selectors: {' | '.join(alternatives)}")
        out.line(indent, _step_statement(step, language, framework))
        if options.include_screenshots and step.screenshot_after:
            out.line(indent, _screenshot_statement(step, language, framework))
        if position < len(steps) - 1:
            out.line(indent)


def _render_js(steps: Sequence[Any], name: str, language: str, framework: str, options: CodeGenerationOptions) -> list[str]:
    out = _Emitter("//")
    if options.include_comments:
        out.note("", f"Test: {name}")
        out.note("", f"Steps: {len(steps)}")
        out.line("")

    if framework == "playwright-test":
        out.line("", f"test({_literal(name)}, async ({{ page }}) => {{")
        _emit_steps(out, steps, "  ", language, framework, options)
        out.line("", "});")
    elif framework == "cypress":
        out.line("", f"describe({_literal(name)}, () => {{")
        out.line("  ", "it('replays the recorded steps', () => {")
        _emit_steps(out, steps, "    ", language, framework, options)
        out.line("  ", "});")
        out.line("", "});")
    else:
        function_name = to_camel_case(name)
        out.line("", f"async function {function_name}() {{")
        out.line("  ", "const browser = await chromium.launch();")
        out.line("  ", "const page = await browser.newPage();")
        out.line("")
        _emit_steps(out, steps, "  ", language, framework, options)
        out.line("")
        out.line("  ", "await browser.close();")
        out.line("", "}")
        out.line("")
        out.line("", f"{function_name}();")
    return out.lines


def _render_python(steps: Sequence[Any], name: str, framework: str, options: CodeGenerationOptions) -> list[str]:
    out = _Emitter("#")
    if options.include_comments:
        out.note("", f"Test: {name}")
        out.note("", f"Steps: {len(steps)}")
        out.line("")
        out.line("")

    function_name = to_snake_case(name)
    if framework == "pytest":
        if not function_name.startswith("test_"):
            function_name = f"test_{function_name}"
        out.line("", f"def {function_name}(page: Page):")
        _emit_steps(out, steps, "    ", "python", framework, options)
    else:
        out.line("", f"async def {function_name}():")
        out.line("    ", "async with async_playwright() as p:")
        out.line("        ", "browser = await p.chromium.launch()")
        out.line("        ", "page = await browser.new_page()")
        out.line("")
        _emit_steps(out, steps, "        ", "python", framework, options)
        out.line("")
        out.line("        ", "await browser.close()")
        out.line("")
        out.line("")
        out.line("", 'if __name__ == "__main__":')
        out.line("    ", f"asyncio.run({function_name}())")
    return out.lines


def generate_test_code(
    steps: Iterable[Any],
    options: CodeGenerationOptions,
    default_name: str | None = None,
) -> GeneratedCode:
    """Compile steps into test source for the requested target.

    ``steps`` are any objects exposing the TestStep attributes. Raises
    InvalidInputError for an unknown target or an empty step list, and
    UnsupportedActionError (naming the step's order_index) when a step cannot
    be expressed in the framework. Nothing is returned on error.
    """
    language, framework = resolve_target(options)
    selected = ordered_steps(steps, options.verified_only)
    if not selected:
        raise InvalidInputError("No steps to generate code from")

    name = sanitize_test_name(options.test_name or default_name)
    imports = build_imports(language, framework)
    if language == "python":
        body = _render_python(selected, name, framework, options)
    else:
        body = _render_js(selected, name, language, framework, options)

    header = imports + ([""] if imports else [])
    if language == "python" and imports:
        header.append("")
    code = "\n".join(header + body) + "\n"
    return GeneratedCode(
        test_code=code,
        imports=[line for line in imports if line],
        test_name=name,
        language=language,
        framework=framework,
        step_count=len(selected),
    )
