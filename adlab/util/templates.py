"""
Jinja2 templates for answer files and PowerShell scripts.

Every script adlab sends to the host or a guest is a template. A file under
the workspace ``templates/`` directory shadows the built-in one of the same
relative name, so a lab can adjust any step without patching adlab.
"""

import shutil
from datetime import datetime
from pathlib import Path
from xml.sax.saxutils import escape as xml_escape

from jinja2 import Environment, FileSystemLoader, StrictUndefined, Template

from adlab.util import powershell

# Get project root to find default templates
PROJECT_ROOT = Path(__file__).parent.parent.parent

WORKSPACE = "workspace"
BUILT_IN = "built-in"


class TemplateLoader:
    """
    Renders templates, preferring workspace overrides over the built-ins.
    """

    def __init__(self, workspace_root: Path):
        self.workspace_root = Path(workspace_root)
        self.workspace_templates = self.workspace_root / "templates"
        self.default_templates = PROJECT_ROOT / "templates"
        self._env: Environment | None = None
        self._template_cache: dict[str, Template] = {}

    def _search_path(self) -> list[tuple[str, Path]]:
        return [
            (source, path)
            for source, path in ((WORKSPACE, self.workspace_templates), (BUILT_IN, self.default_templates))
            if path.is_dir()
        ]

    @property
    def env(self) -> Environment:
        """
        Jinja2 environment with the PowerShell and XML quoting filters.

        Undefined variables raise instead of rendering as empty strings, so a
        template that drifts from its caller fails before anything runs.
        """
        if self._env is None:
            search_path = [str(path) for _, path in self._search_path()]
            if not search_path:
                raise FileNotFoundError("No template directories found")

            self._env = Environment(
                loader=FileSystemLoader(search_path),
                trim_blocks=True,
                lstrip_blocks=True,
                keep_trailing_newline=True,
                undefined=StrictUndefined,
            )
            self._env.filters.update(
                ps=powershell.quote,
                ps_array=powershell.array,
                ps_bool=powershell.boolean,
                ps_value=powershell.value,
                xml=lambda x: xml_escape(str(x)),
            )

        return self._env

    def get_template_path(self, template_name: str) -> Path:
        """
        Resolve a template name to the file that will be rendered.

        Raises:
            FileNotFoundError: If neither the workspace nor adlab ships it
        """
        for _, root in self._search_path():
            candidate = root / template_name
            if candidate.is_file():
                return candidate
        raise FileNotFoundError(f"Template '{template_name}' not found in workspace or defaults")

    def load_template(self, template_name: str) -> Template:
        if template_name not in self._template_cache:
            self.get_template_path(template_name)
            self._template_cache[template_name] = self.env.get_template(template_name)
        return self._template_cache[template_name]

    def render(self, template_name: str, **context) -> str:
        """Render a template to a string."""
        context.setdefault("timestamp", datetime.now().isoformat(timespec="seconds"))
        return self.load_template(template_name).render(**context)

    def copy_default_templates_to_workspace(self) -> None:
        """
        Copy the built-in templates into the workspace for editing.

        An existing workspace ``templates/`` is moved to ``templates.backup/``
        first (replacing any earlier backup).
        """
        if not self.default_templates.exists():
            raise FileNotFoundError(f"Default templates not found at {self.default_templates}")

        if self.workspace_templates.exists():
            backup_dir = self.workspace_root / "templates.backup"
            if backup_dir.exists():
                shutil.rmtree(backup_dir)
            shutil.move(str(self.workspace_templates), str(backup_dir))

        shutil.copytree(str(self.default_templates), str(self.workspace_templates))
        self._env = None
        self._template_cache.clear()

    def template_sources(self) -> dict[str, str]:
        """
        Map every known template name to where it is rendered from.

        Returns:
            ``{name: "workspace" | "built-in"}`` sorted by name
        """
        sources: dict[str, str] = {}
        for source, root in self._search_path():
            for template_file in root.rglob("*.j2"):
                sources.setdefault(template_file.relative_to(root).as_posix(), source)
        return dict(sorted(sources.items()))
