"""Multi-file code generation for a decomposed plan.

Tracks are generated in dependency order. Inside a track, files are
generated by a bounded worker pool so the rate limiter and the AI
backend's throughput are respected. A file that fails is reported as a
FileFailure; its siblings still complete.
"""

import logging
import posixpath
import re
import sys
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import PurePosixPath

from jinja2 import TemplateError
from jinja2.sandbox import SandboxedEnvironment

from autopilot.core.ai import INPUT_TOKEN_COST, OUTPUT_TOKEN_COST, AIClient, estimate_tokens
from autopilot.core.context import ContextLoader, PromptRenderer
from autopilot.core.errors import AIGenerationFailure, AutopilotError
from autopilot.core.models import (
    Decomposition,
    FileAction,
    FileFailure,
    FileGenerationOutput,
    GeneratedFile,
    GenerationResult,
    ImportRef,
    Subtask,
    SubtaskType,
)
from autopilot.core.parser import Err
from autopilot.core.patterns import PatternEntry, PatternLibrary
from autopilot.core.tools import ToolExecutionLayer

logger = logging.getLogger(__name__)

LANGUAGE_BY_EXTENSION = {
    ".py": "python",
    ".pyi": "python",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".js": "javascript",
    ".jsx": "jsx",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".json": "json",
    ".css": "css",
    ".scss": "scss",
    ".html": "html",
    ".md": "markdown",
    ".sql": "sql",
    ".sh": "bash",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
}

PYTHON_LANGUAGES = frozenset(["python"])
JS_LANGUAGES = frozenset(["typescript", "tsx", "javascript", "jsx"])
JS_EXTENSIONS = [".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs"]

NODE_BUILTINS = frozenset(
    [
        "assert", "buffer", "child_process", "crypto", "dns", "events", "fs",
        "http", "https", "net", "os", "path", "process", "querystring",
        "readline", "stream", "string_decoder", "timers", "tls", "url",
        "util", "vm", "worker_threads", "zlib",
    ]
)

_PY_IMPORT_RE = re.compile(r"^\s*import\s+([\w.]+(?:\s*,\s*[\w.]+)*)", re.MULTILINE)
_PY_FROM_RE = re.compile(r"^\s*from\s+(\.*[\w.]*)\s+import\s", re.MULTILINE)
_JS_IMPORT_RE = re.compile(r"""^\s*(?:import|export)\s[^'"]*?from\s+['"]([^'"]+)['"]""", re.MULTILINE)
_JS_BARE_IMPORT_RE = re.compile(r"""^\s*import\s+['"]([^'"]+)['"]""", re.MULTILINE)
_JS_REQUIRE_RE = re.compile(r"""\brequire\(\s*['"]([^'"]+)['"]\s*\)""")


def detect_language(path: str) -> str:
    return LANGUAGE_BY_EXTENSION.get(PurePosixPath(path).suffix.lower(), "text")


def extract_imports(content: str, language: str) -> list[str]:
    """Module references imported by ``content``, in first-seen order."""
    found: list[str] = []
    if language in PYTHON_LANGUAGES:
        for match in _PY_IMPORT_RE.finditer(content):
            found.extend(m.strip() for m in match.group(1).split(","))
        found.extend(m.group(1) for m in _PY_FROM_RE.finditer(content))
    elif language in JS_LANGUAGES:
        for regex in (_JS_IMPORT_RE, _JS_BARE_IMPORT_RE, _JS_REQUIRE_RE):
            found.extend(m.group(1) for m in regex.finditer(content))
    return list(dict.fromkeys(found))


class ImportResolver:
    """Classify imports against the repository's module graph.

    ``known_files`` is the set of repository-relative POSIX paths,
    including files generated in the same batch.
    """

    def __init__(self, known_files: set[str]):
        self.known_files = known_files
        self._top_level_dirs = {p.split("/", 1)[0] for p in known_files if "/" in p}

    def _python_candidates(self, dotted: str, base: str = "") -> list[str]:
        rel = dotted.replace(".", "/")
        joined = posixpath.join(base, rel) if base else rel
        return [f"{joined}.py", f"{joined}/__init__.py", f"src/{joined}.py", f"src/{joined}/__init__.py"]

    def _first_known(self, candidates: list[str]) -> str | None:
        for candidate in candidates:
            normalized = posixpath.normpath(candidate)
            if normalized in self.known_files:
                return normalized
        return None

    def resolve_python(self, module: str, from_path: str) -> ImportRef:
        if module.startswith("."):
            dots = len(module) - len(module.lstrip("."))
            base = posixpath.dirname(from_path)
            for _ in range(dots - 1):
                base = posixpath.dirname(base)
            rest = module[dots:]
            candidates = (
                self._python_candidates(rest, base)[:2]
                if rest
                else [posixpath.join(base, "__init__.py")]
            )
            resolved = self._first_known(candidates)
            return ImportRef(module=module, kind="internal" if resolved else "unresolved", resolved_path=resolved)

        top = module.split(".", 1)[0]
        if top in sys.stdlib_module_names:
            return ImportRef(module=module, kind="stdlib")
        resolved = self._first_known(self._python_candidates(module))
        if resolved:
            return ImportRef(module=module, kind="internal", resolved_path=resolved)
        # A submodule of a repository package that does not exist
        if top in self._top_level_dirs or f"{top}.py" in self.known_files:
            return ImportRef(module=module, kind="unresolved")
        return ImportRef(module=module, kind="external")

    def resolve_js(self, specifier: str, from_path: str) -> ImportRef:
        if specifier.startswith("node:") or specifier.split("/", 1)[0] in NODE_BUILTINS:
            return ImportRef(module=specifier, kind="stdlib")

        if specifier.startswith("."):
            base = posixpath.join(posixpath.dirname(from_path), specifier)
        elif specifier.startswith("@/"):
            base = posixpath.join("src", specifier[2:])
        else:
            return ImportRef(module=specifier, kind="external")

        candidates = [base] + [base + ext for ext in JS_EXTENSIONS]
        candidates += [posixpath.join(base, f"index{ext}") for ext in JS_EXTENSIONS]
        resolved = self._first_known(candidates)
        return ImportRef(module=specifier, kind="internal" if resolved else "unresolved", resolved_path=resolved)

    def resolve(self, content: str, language: str, from_path: str) -> list[ImportRef]:
        refs = []
        for module in extract_imports(content, language):
            if language in PYTHON_LANGUAGES:
                refs.append(self.resolve_python(module, from_path))
            else:
                refs.append(self.resolve_js(module, from_path))
        return refs


def adapt_template(template: str, subtask: Subtask, path: str) -> str:
    """Fill a pattern template's placeholders for ``path``.

    Raises:
        TemplateError: The template is not valid Jinja2.
    """
    stem = PurePosixPath(path).stem
    env = SandboxedEnvironment(autoescape=False, keep_trailing_newline=True)
    return env.from_string(template).render(
        path=path,
        name=stem,
        class_name="".join(part.capitalize() for part in re.split(r"[_\-.]", stem) if part),
        description=subtask.description,
        subtask_id=subtask.id,
    )


@dataclass
class _FileJob:
    subtask: Subtask
    path: str


class CodeGenerator:
    """Generate file content for every file named by a plan."""

    def __init__(
        self,
        tools: ToolExecutionLayer,
        ai: AIClient,
        patterns: PatternLibrary | None = None,
        context_loader: ContextLoader | None = None,
        renderer: PromptRenderer | None = None,
        max_workers: int = 4,
        reuse_threshold: float = 0.3,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.tools = tools
        self.ai = ai
        self.patterns = patterns
        self.context_loader = context_loader or ContextLoader(tools)
        self.renderer = renderer or PromptRenderer()
        self.max_workers = max_workers
        self.reuse_threshold = reuse_threshold
        self._stats_lock = threading.Lock()

    def _jobs_by_track(self, decomposition: Decomposition) -> list[list[_FileJob]]:
        """File jobs grouped by parallel track. A path belongs to the first
        subtask that names it."""
        claimed: set[str] = set()
        if decomposition.tracks:
            levels = [t.subtask_ids for t in decomposition.tracks]
        else:
            levels = [[s.id] for s in decomposition.subtasks]
        grouped = []
        for ids in levels:
            jobs = []
            for sid in ids:
                subtask = decomposition.get(sid)
                if subtask is None:
                    continue
                if not subtask.files:
                    logger.debug(f"Subtask {sid} names no files; nothing to generate")
                for path in subtask.files:
                    normalized = posixpath.normpath(path.replace("\\", "/"))
                    if normalized in claimed:
                        logger.warning(f"{normalized} already generated by an earlier subtask; skipping for {sid}")
                        continue
                    claimed.add(normalized)
                    jobs.append(_FileJob(subtask=subtask, path=normalized))
            if jobs:
                grouped.append(jobs)
        return grouped

    def generate(self, prompt: str, decomposition: Decomposition) -> GenerationResult:
        """Generate every file in the plan, track by track."""
        result = GenerationResult()
        track_jobs = self._jobs_by_track(decomposition)
        all_paths = {job.path for jobs in track_jobs for job in jobs}
        target_paths = sorted(all_paths)

        context = self.context_loader.load(target_paths)
        resolver = ImportResolver(self.context_loader.existing_files() | all_paths)
        rendered_context = context.render()
        generated: dict[str, GeneratedFile] = {}

        for level, jobs in enumerate(track_jobs):
            logger.info(f"Generating track {level}: {len(jobs)} files")
            executor = ThreadPoolExecutor(max_workers=min(self.max_workers, len(jobs)))
            try:
                futures: dict[Future, _FileJob] = {
                    executor.submit(
                        self._generate_file,
                        prompt,
                        job,
                        rendered_context,
                        self._dependency_context(job.subtask, generated),
                        resolver,
                        result,
                    ): job
                    for job in jobs
                }
                for future in as_completed(futures):
                    job = futures[future]
                    try:
                        generated[job.path] = future.result()
                    except AutopilotError as e:
                        logger.warning(f"Generation failed for {job.path}: {e}")
                        result.failures.append(FileFailure(path=job.path, subtask_id=job.subtask.id, error=str(e)))
                    except Exception as e:
                        logger.exception(f"Unexpected error generating {job.path}")
                        result.failures.append(
                            FileFailure(path=job.path, subtask_id=job.subtask.id, error=f"{type(e).__name__}: {e}")
                        )
            finally:
                executor.shutdown(wait=True)

        order = {job.path: i for i, job in enumerate(j for jobs in track_jobs for j in jobs)}
        result.files = sorted(generated.values(), key=lambda f: order[f.path])
        result.failures.sort(key=lambda f: order.get(f.path, 0))
        result.estimated_cost = round(result.estimated_cost, 6)
        logger.info(
            f"Generated {len(result.files)} files ({len(result.failures)} failed, "
            f"{result.reused_templates} from templates, ~${result.estimated_cost:.4f})"
        )
        return result

    def _dependency_context(self, subtask: Subtask, generated: dict[str, GeneratedFile]) -> str:
        parts = []
        for f in generated.values():
            if f.subtask_id in subtask.dependencies and f.new_content is not None:
                parts.append(f"### {f.path} (generated)\n\n```\n{f.new_content}\n```")
        return "\n\n".join(parts)

    def _read_original(self, path: str) -> str | None:
        data = self.tools.read_bytes(path, missing_ok=True)
        if data is None:
            return None
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            raise AIGenerationFailure(f"Refusing to regenerate binary file {path}")

    def _find_template(self, subtask: Subtask) -> tuple[PatternEntry, float] | None:
        if self.patterns is None or not self.patterns.ready or subtask.type != SubtaskType.CODE:
            return None
        return self.patterns.find_template(subtask.description, self.reuse_threshold)

    def _generate_file(
        self,
        prompt: str,
        job: _FileJob,
        context: str,
        dependency_context: str,
        resolver: ImportResolver,
        result: GenerationResult,
    ) -> GeneratedFile:
        subtask, path = job.subtask, job.path
        language = detect_language(path)
        original = self._read_original(path)

        template_match = self._find_template(subtask)
        template = template_match[0].template if template_match else ""
        if template_match and original is None:
            entry, score = template_match
            try:
                content = adapt_template(entry.template, subtask, path)
            except TemplateError as e:
                logger.warning(f"Template '{entry.name}' unusable for {path}: {e}")
            else:
                logger.info(f"Reused pattern '{entry.name}' for {path} (similarity {score:.2f})")
                with self._stats_lock:
                    result.reused_templates += 1
                return GeneratedFile(
                    path=path,
                    language=language,
                    original_content=None,
                    new_content=content,
                    action=FileAction.CREATE,
                    rationale=f"Adapted from pattern '{entry.name}'",
                    subtask_id=subtask.id,
                    imports=resolver.resolve(content, language, path),
                    reused_pattern=entry.name,
                )

        full_context = "\n\n".join(p for p in (context, dependency_context) if p)
        request = self.renderer.render(
            "generate_file.j2",
            language=language,
            prompt=prompt,
            subtask=subtask,
            path=path,
            original=original,
            template=template,
            context=full_context,
        )
        outcome = self.ai.complete_structured(request, FileGenerationOutput)
        if isinstance(outcome, Err):
            raise outcome.error
        output: FileGenerationOutput = outcome.value

        tokens = estimate_tokens(request) + estimate_tokens(output.content)
        with self._stats_lock:
            result.estimated_tokens += tokens
            result.estimated_cost += (
                estimate_tokens(request) * INPUT_TOKEN_COST
                + estimate_tokens(output.content) * OUTPUT_TOKEN_COST
            ) / 1_000_000

        if output.delete:
            if original is None:
                raise AIGenerationFailure(f"Cannot delete {path}: file does not exist")
            return GeneratedFile(
                path=path,
                language=language,
                original_content=original,
                new_content=None,
                action=FileAction.DELETE,
                rationale=output.rationale,
                subtask_id=subtask.id,
            )

        if not output.content.strip():
            raise AIGenerationFailure(f"Empty content generated for {path}")
        content = output.content if output.content.endswith("\n") else output.content + "\n"
        return GeneratedFile(
            path=path,
            language=language,
            original_content=original,
            new_content=content,
            action=FileAction.CREATE if original is None else FileAction.MODIFY,
            rationale=output.rationale,
            subtask_id=subtask.id,
            imports=resolver.resolve(content, language, path),
        )
