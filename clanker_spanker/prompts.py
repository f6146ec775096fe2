"""Prompt and banner rendering utilities."""

from functools import lru_cache

from jinja2 import Environment, PackageLoader, StrictUndefined, select_autoescape

# Types that Jinja2 can render natively in our templates.
TemplateContextValue = str | int | bool | None


@lru_cache(maxsize=1)
def _prompt_environment() -> Environment:
    """Build and cache the Jinja environment for prompt templates.

    Templates are plain-text prompts and console banners, so autoescaping is
    only enabled for HTML extensions.
    """
    return Environment(
        loader=PackageLoader("clanker_spanker", "templates"),
        autoescape=select_autoescape(enabled_extensions=("html", "htm")),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        undefined=StrictUndefined,
    )


def render_prompt(template_name: str, **context: TemplateContextValue) -> str:
    """Render a prompt template.

    Args:
        template_name: Template filename (e.g., "fix_ci.j2")
        **context: Template variables (str, int, bool, or None)

    Returns:
        Rendered prompt text

    """
    template = _prompt_environment().get_template(template_name)
    return template.render(**context).strip()
