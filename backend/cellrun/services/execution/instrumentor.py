"""Code instrumentor — wraps user code with chart-capture preamble/postamble.

Headless runs cannot open plot windows, so the wrapper:

- forces matplotlib onto the non-interactive ``Agg`` backend
- replaces ``pyplot.show`` / ``Figure.show`` (and plotly's ``Figure.show``
  when the cell uses plotly) with hooks that save the figure to
  ``<workspace>/chart_<n>.png``
- prints one sentinel line per saved chart::

      [CELLRUN_CHART:/abs/path/chart_1.png]

- after the user code, saves every figure that was created but never shown

Sentinel lines are an out-of-band contract on stdout: they are stripped from
``ExecutionResult.clean_output`` and define the artifact order. A missing
charting library is not an error.

Escaping contract: only the preamble/postamble go through
``string.Template``; the workspace path is rendered as a JSON string literal
(valid Python) and the user code is inserted verbatim.
"""

from __future__ import annotations

import json
import re
from string import Template
from typing import List

MARKER_PREFIX = "[CELLRUN_CHART:"
MARKER_SUFFIX = "]"

_FUTURE_IMPORT = re.compile(r"^from\s+__future__\s+import\s+.+$")

_PREAMBLE = Template('''\
# === cellrun runtime wrapper ===
import os as _cellrun_os
import sys as _cellrun_sys

_CELLRUN_OUTPUT_DIR = $workspace
_cellrun_chart_counter = [0]


def _cellrun_next_chart_path():
    _cellrun_chart_counter[0] += 1
    return _cellrun_os.path.join(_CELLRUN_OUTPUT_DIR, "chart_%d.png" % _cellrun_chart_counter[0])


def _cellrun_emit(path):
    print("$prefix%s$suffix" % path, flush=True)


# Configure matplotlib for non-interactive use
_cellrun_plt = None
try:
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.figure
    import matplotlib.pyplot as _cellrun_plt

    def _cellrun_save_figure(fig):
        path = _cellrun_next_chart_path()
        fig.savefig(path, dpi=$dpi, bbox_inches="tight")
        _cellrun_plt.close(fig)
        _cellrun_emit(path)

    def _cellrun_show(*args, **kwargs):
        if _cellrun_plt.get_fignums():
            _cellrun_save_figure(_cellrun_plt.gcf())

    def _cellrun_figure_show(self, *args, **kwargs):
        _cellrun_save_figure(self)

    _cellrun_plt.show = _cellrun_show
    matplotlib.figure.Figure.show = _cellrun_figure_show
except ImportError:
    _cellrun_plt = None
''')

_PLOTLY_HOOK = Template('''\

# Redirect plotly figures to static images
try:
    import plotly.graph_objects as _cellrun_go

    def _cellrun_plotly_show(self, *args, **kwargs):
        path = _cellrun_next_chart_path()
        try:
            self.write_image(path, width=$width, height=$height)
        except Exception as exc:
            print("cellrun: could not render plotly figure: %s" % exc, file=_cellrun_sys.stderr)
            return
        _cellrun_emit(path)

    _cellrun_go.Figure.show = _cellrun_plotly_show
except ImportError:
    pass
''')

_POSTAMBLE = Template('''\

# === Auto-save remaining figures ===
if _cellrun_plt is not None:
    try:
        for _cellrun_num in _cellrun_plt.get_fignums():
            _cellrun_save_figure(_cellrun_plt.figure(_cellrun_num))
    except Exception as _cellrun_exc:
        print("cellrun: could not save open figures: %s" % _cellrun_exc, file=_cellrun_sys.stderr)
''')


def _split_future_imports(code: str) -> tuple[List[str], str]:
    """Pull ``from __future__`` statements out so they can stay first in the script.

    Parenthesized imports spanning several lines are moved as a whole.
    """
    futures: List[str] = []
    body: List[str] = []
    lines = iter(code.splitlines())
    for line in lines:
        if not _FUTURE_IMPORT.match(line.strip()) or line[:1].isspace():
            body.append(line)
            continue
        futures.append(line)
        if "(" in line and ")" not in line:
            for continuation in lines:
                futures.append(continuation)
                if ")" in continuation:
                    break
    return futures, "\n".join(body)


def wrap(user_code: str, workspace: str, *, dpi: int = 150) -> str:
    """Return *user_code* wrapped with the chart-capture preamble/postamble.

    Args:
        user_code: Raw cell source, inserted verbatim.
        workspace: Absolute directory where charts are written.
        dpi: Resolution for saved matplotlib figures.
    """
    futures, body = _split_future_imports(user_code)
    params = {
        "workspace": json.dumps(str(workspace)),
        "prefix": MARKER_PREFIX,
        "suffix": MARKER_SUFFIX,
        "dpi": int(dpi),
        "width": 800,
        "height": 500,
    }

    parts: List[str] = []
    if futures:
        parts.append("\n".join(futures) + "\n")
    parts.append(_PREAMBLE.substitute(params))
    # plotly is slow to import; only hook it for cells that use it.
    if "plotly" in body:
        parts.append(_PLOTLY_HOOK.substitute(params))
    parts.append("\n# === User Code ===\n\n")
    parts.append(body)
    parts.append("\n")
    parts.append(_POSTAMBLE.substitute(params))
    return "".join(parts)


def is_marker_line(line: str) -> bool:
    stripped = line.strip()
    return stripped.startswith(MARKER_PREFIX) and stripped.endswith(MARKER_SUFFIX)


def marker_paths(stdout: str) -> List[str]:
    """Artifact paths referenced by sentinel lines, in emission order."""
    paths: List[str] = []
    for line in stdout.splitlines():
        if is_marker_line(line):
            path = line.strip()[len(MARKER_PREFIX):-len(MARKER_SUFFIX)]
            if path and path not in paths:
                paths.append(path)
    return paths


def strip_markers(stdout: str) -> str:
    """Remove sentinel lines from *stdout* and trim surrounding whitespace."""
    return "\n".join(line for line in stdout.splitlines() if not is_marker_line(line)).strip()
