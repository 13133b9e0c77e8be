import os

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .helpers import format_amount, to_iso

TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), "templates")

env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(["html", "svg", "j2"]),
)
env.filters["iso"] = to_iso
env.filters["amount"] = format_amount


def render(name: str, **context) -> str:
    return env.get_template(name).render(**context)
