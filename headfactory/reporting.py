"""Classes for handling reporting - adding customizable pieces of information
to the HTML report of a pipeline run, and rendering that report from the
workspace's provenance log.

Pieces of information are handled through a base :code:`Reportable` class, and
each reporter class extends it. Reportables are attached either by a
collaborator through :code:`StageContext.report()`, or by a pipeline
:code:`Snapshot`.
"""

import datetime
import html as html_escape
import json
import logging
import os
import shutil
from typing import List

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from graphviz import Digraph
from graphviz.backend import ExecutableNotFound

from headfactory import utils
from headfactory.provenance import (
    InvocationEntry,
    SnapshotEntry,
    Status,
)

COLORS = [
    "darkseagreen2",  # #b4eeb4
    "thistle",
    "peachpuff",
    "paleturquoise2",
    "salmon",
    "silver",
    "hotpink",
    "deepskyblue",
    "yellowgreen",
]

COLOR_VALS = {  # some of the graphviz color names aren't websafe
    "darkseagreen2": "#b4eeb4",
    "thistle": "#d8bfd8",
    "peachpuff": "#ffdab9",
    "paleturquoise2": "#aeeeee",
    "salmon": "#fa8072",
    "silver": "#c0c0c0",
    "hotpink": "#ff69b4",
    "deepskyblue": "#00bfff",
    "yellowgreen": "#9acd32",
}

STATUS_COLORS = {
    "incomplete": "orange",
    "complete": "green",
    "error": "red",
    Status.SUCCEEDED.value: "green",
    Status.FAILED.value: "red",
    Status.CANCELLED.value: "orange",
    Status.SKIPPED.value: "gray",
    Status.PENDING.value: "gray",
    Status.RUNNING.value: "cyan",
}


class Reportable:
    """The base reporter class, any custom reporter should extend this.

    Args:
        name (str): A (optional) reference name to give this piece of reported info, it is used
            as the title and as the filename of anything it renders. If :code:`None` is
            supplied, the report names it after where it came from and its position.
        group (str): An optional string to use for grouping multiple related reportables
            together in the report (e.g. every registration check.)

    Note:
        When subclassing a reportable, :code:`html()` must be overriden, and :code:`render()`
        optionally may be depending on the nature of the reportable. If a reportable relies on
        some form of external file, such as an image or figure, implement :code:`render()` to save
        it (using this class's :code:`path` variable as the directory), and then reference it
        in the output from :code:`html()`.

        .. code-block:: python

            class FigureReporter(Reportable):
                def __init__(self, fig, name=None, group=None):
                    self.fig = fig
                    super().__init__(name=name, group=group)

                def render(self):
                    self.fig.savefig(os.path.join(self.path, f"{self.name}.png"))

                def html(self):
                    return f"<img src='{self.path}/{self.name}.png'>"
    """

    def __init__(self, name=None, group=None):
        self.rendered: bool = False
        """A flag indicating whether this reportable's :code:`render()` has been called yet or not."""
        self.path: str = ""
        """Set internally by reporting functions, this variable holds a valid path where a
        reportable can save files (e.g. images) as needed. This is available to access both
        in :code:`render()` and :code:`html()`"""
        self.name: str = name
        """The title of the reportable."""
        self.group: str = group
        """If specified, reports group all reportables with the same :code:`group` value together."""
        self.invocation_id: str = None
        """The id of the invocation this reportable came from, populated via
        :code:`StageContext.report()`. ``None`` for snapshot reportables."""
        self.source: str = ""
        """Where the reportable came from (the stage or snapshot label), set when the
        report is rendered."""

    def html(self):
        """When a report is created, the :code:`html()` function for every reportable is
        called and appended to the report. This function should either return a single
        string of html, or can return a list of lines of html.

        Note:
            Any subclass is **required** to implement this.
        """
        pass

    def render(self):
        """Any file outputs or calculations that should only run once go here."""
        pass


class HTMLReporter(Reportable):
    """Adds the raw string of HTML passed to it to the report.

    Args:
        html_string (str): The raw string of HTML to include.
    """

    def __init__(self, html_string, name=None, group=None):
        self.html_string = html_string
        """The raw string of HTML to include."""
        super().__init__(name=name, group=group)

    def html(self):
        return self.html_string


class DFReporter(Reportable):
    """Adds an HTML table to the report for the given pandas dataframe.

    Args:
        df (pd.DataFrame): The pandas dataframe to include in the report.
        float_prec (int): the floating point precision to round all values to.
    """

    def __init__(self, df: pd.DataFrame, name=None, group=None, float_prec=4):
        self.df = df
        self.float_prec = float_prec
        super().__init__(name=name, group=group)

    def render(self):
        # also kept as csv so it's easily browsable elsewhere
        self.df.to_csv(f"{self.path}/{self.name}.csv")

    def html(self):
        return render_dataframe(self.df, self.float_prec)


class JsonReporter(Reportable):
    """Adds an indented JSON dump in a :code:`<pre>` tag for a passed dictionary.

    Args:
        dictionary (Dict): The python dictionary to write to a JSON string.
    """

    def __init__(self, dictionary, name=None, group=None):
        self.data = dictionary
        super().__init__(name=name, group=group)

    def html(self):
        return [
            "<pre>",
            _safe(json.dumps(self.data, indent=4, default=lambda x: str(x))),
            "</pre>",
        ]


class FigureReporter(Reportable):
    """Adds a passed matplotlib figure to the report, e.g. a registration check.

    Args:
        fig: A matplotlib figure to render.
        kwargs: All keywords args are passed to the figures :code:`savefig()` call in render.
    """

    def __init__(self, fig, name=None, group=None, **kwargs):
        self.kwargs = kwargs
        self.fig = fig
        super().__init__(name=name, group=group)

    def render(self):
        if "format" not in self.kwargs:
            self.kwargs["format"] = "png"
        self.fig.savefig(
            f"{self.path}/{self.name}.{self.kwargs['format']}", **self.kwargs
        )
        plt.close(self.fig)

    def html(self):
        return f"<img src='{self.path}/{self.name}.{self.kwargs.get('format', 'png')}'>"


class LinePlotReporter(Reportable):
    """Takes set(s) of data, creates matplotlib line plots for it, and adds to the report.

    x (optional) and y are both either a single list/numpy array of data, or are both
    dictionaries of lists/numpy arrays of data to plot, where the keys appear in the
    legend. (e.g. the power spectrum of each channel type.)

    Args:
        y: a single list/numpy array or dictionary of lists/numpy arrays of y data.
        x: (optional), a single list/numpy array or dictionary of lists/numpy arrays of x data.
            If specified, this must match y.
        xlabel (str): Label of the x axis.
        ylabel (str): Label of the y axis.
        logy (bool): Use a log scale for the y axis.
        plot_kwargs (Dict): The **kwargs to pass to the matplotlib :code:`plt.plot()` call.
        savefig_kwargs (Dict): The **kwargs to pass to the :code:`fig.savefig()` call on render.

    Example:
        .. code-block:: python

            def psd(context, inputs, params):
                freqs, power = welch(...)
                context.report(LinePlotReporter(
                    y={"EEG": power[eeg].mean(axis=0), "MEG": power[meg].mean(axis=0)},
                    x={"EEG": freqs, "MEG": freqs},
                    logy=True,
                    name="psd"))
    """

    def __init__(
        self,
        y,
        x=None,
        name=None,
        group=None,
        xlabel: str = None,
        ylabel: str = None,
        logy: bool = False,
        plot_kwargs: dict = None,
        savefig_kwargs: dict = None,
    ):
        self.savefig_kwargs = dict(savefig_kwargs or {})
        self.plot_kwargs = dict(plot_kwargs or {})
        self.y = y
        self.x = x
        self.xlabel = xlabel
        self.ylabel = ylabel
        self.logy = logy
        super().__init__(name=name, group=group)

    def render(self):
        fig = plt.figure(facecolor="white")

        if self.x is None:
            if isinstance(self.y, dict):
                for key in self.y:
                    plt.plot(self.y[key], label=key, **self.plot_kwargs)
                plt.legend()
            else:
                plt.plot(self.y, **self.plot_kwargs)
        else:
            if isinstance(self.y, dict):
                for key in self.y:
                    plt.plot(self.x[key], self.y[key], label=key, **self.plot_kwargs)
                plt.legend()
            else:
                plt.plot(self.x, self.y, **self.plot_kwargs)
        if self.logy:
            plt.yscale("log")
        if self.xlabel is not None:
            plt.xlabel(self.xlabel)
        if self.ylabel is not None:
            plt.ylabel(self.ylabel)
        plt.grid(True)

        if "format" not in self.savefig_kwargs:
            self.savefig_kwargs["format"] = "png"
        fig.savefig(
            f"{self.path}/{self.name}.{self.savefig_kwargs['format']}",
            **self.savefig_kwargs,
        )
        plt.close(fig)

    def html(self):
        return f"<img src='{self.path}/{self.name}.{self.savefig_kwargs.get('format', 'png')}'>"


def _safe(text) -> str:
    return html_escape.escape(str(text), quote=False)


def render_dataframe(df: pd.DataFrame, float_prec: int = 4) -> List[str]:
    """Get the lines of an HTML table for a dataframe."""
    output = ["<table border='1' cellspacing='0'><tr><th></th>"]

    # column row
    for col in df.columns:
        output.append(f"<th>{_safe(col)}</th>")
    output.append("</tr>")

    for index, row in df.iterrows():
        output.append("<tr>")
        output.append(f"<th>{_safe(index)}</th>")
        for item in row:
            if isinstance(item, (float, np.floating)) and not pd.isna(item):
                output.append(
                    "<td align='right'><pre>{0:.{1}f}</pre></td>".format(item, float_prec)
                )
            elif item is None or (isinstance(item, float) and pd.isna(item)):
                output.append("<td></td>")
            else:
                output.append(f"<td align='right'><pre>{_safe(item)}</pre></td>")
        output.append("</tr>")

    output.append("</table>")
    return output


def collect_reportables(log) -> List[Reportable]:
    """Every reportable attached to the log's invocations and snapshots, in log order.
    Unnamed reportables are named after their source and position."""
    reportables = []
    for entry in log:
        if isinstance(entry, InvocationEntry):
            source = f"{entry.id}_{entry.stage_id}"
        elif isinstance(entry, SnapshotEntry):
            source = utils.slugify(entry.label)
        else:
            continue
        for index, reportable in enumerate(entry.reportables):
            reportable.source = source
            if reportable.name is None:
                reportable.name = f"{source}_{index}"
            reportables.append(reportable)
    return reportables


def _group_reportables(reportables: List[Reportable]):
    grouped = {}
    ungrouped = []
    for reportable in reportables:
        if reportable.group is None:
            ungrouped.append(reportable)
        else:
            grouped.setdefault(reportable.group, []).append(reportable)
    return grouped, ungrouped


def render_report_head(workspace) -> List[str]:
    """Generates the report head tag."""
    return [
        f"<head><title>{_safe(workspace.pipeline_name)}/{workspace.run_number}</title>",
        "<link rel='stylesheet' href='style.css'></head>",
    ]


def render_report_info_block(workspace, result=None) -> List[str]:
    """Generate the header and block of metadata at the top of the report."""
    html_lines = []

    status_color = STATUS_COLORS.get(workspace.status, "")
    status_line = (
        f"<b><span style='color: {status_color}'>{workspace.status.upper()}</span></b>"
    )
    if workspace.status == "error" and workspace.error is not None:
        status_line += " - " + _safe(workspace.error)

    html_lines.append(
        f"<h1 id='title'>Report: {_safe(workspace.pipeline_name)} - {workspace.run_number}</h1>"
    )
    html_lines.extend(
        [
            "<div id='run-info-block'>",
            f"<p>Pipeline: <b>{_safe(workspace.pipeline_name)}</b> </br>",
            f"Workspace: <b>{_safe(workspace.name)}</b></br>",
            f"Run number: <b>{workspace.run_number}</b></br>",
            f"Run timestamp: <b>{workspace.run_timestamp.strftime('%m/%d/%Y %H:%M:%S')}</b></br>",
            f"Report generated: <b>{datetime.datetime.now().strftime('%m/%d/%Y %H:%M:%S')}</b></br>",
            f"Reference: <b>{_safe(workspace.get_reference_name())}</b></br>",
            f"Hostname: <b>{_safe(workspace.hostname)}</b></br>",
            f"OS: {_safe(workspace.os)}</br>",
            f"Run status: {status_line}</br>",
            f"Git commit: {workspace.git_commit_hash}</br>",
            f"Parameters hash: {workspace.params_hash}</br></p>",
        ]
    )

    subjects = list(workspace.store.subjects)
    failed = workspace.log.failed()
    html_lines.extend(
        [
            "<ul>",
            f"<li>Subjects: {_safe(', '.join(subjects))}</li>",
            f"<li>Invocations: {len(workspace.log.invocations)}</li>",
            f"<li>Failed invocations: {len(failed)}"
            + (f" ({', '.join(inv.id for inv in failed)})" if len(failed) > 0 else "")
            + "</li>",
            "</ul></div>",
        ]
    )

    html_lines.append(f"<p id='run-string'>Run string: <pre>{_safe(workspace.run_line)}</pre></p>")

    if workspace.notes is not None and workspace.notes != "":
        html_lines.append("<h3>Notes</h3>")
        notes = _safe(workspace.notes).replace("\n", "</br>")
        html_lines.append(f"<p>{notes}</p>")

    return html_lines


def render_report_toc(has_reportables: bool) -> List[str]:
    """Render table of contents for the overall report."""
    html_lines = ["<a name='top'></a>", "<h2>Table of Contents</h2>", "<ul id='toc'>"]
    if has_reportables:
        html_lines.append("<li><a href='#reportables'>Reportables</a></li>")
    html_lines.extend(
        [
            "<li><a href='#variants'>Variants</a></li>",
            "<li><a href='#provenance'>Provenance</a></li>",
            "<li><a href='#map'>Map</a></li>",
            "<li><a href='#log'>Log</a></li>",
            "</ul>",
        ]
    )
    return html_lines


def render_report_reportables_toc(reportables: List[Reportable]) -> List[str]:
    """Render the table of contents for the reportables."""
    html_lines = []
    grouped, ungrouped = _group_reportables(reportables)

    html_lines.append("<a name='reportables'></a>")
    html_lines.append("<h2>Reportables</h2><ul id='reportables-list'>")
    for group in grouped:
        html_lines.append(f"<li>{_safe(group)}<ul>")
        for reportable in grouped[group]:
            html_lines.append(
                f"<li><a href='#{reportable.name}'>{_safe(reportable.name)}</a></li>"
            )
        html_lines.append("</ul></li>")
    for reportable in ungrouped:
        html_lines.append(
            f"<li><a href='#{reportable.name}'>{_safe(reportable.name)}</a></li>"
        )
    html_lines.append("</ul>")
    return html_lines


def render_report_all_reportables(
    reportables: List[Reportable], reportables_path: str
) -> List[str]:
    """Get the HTML for displaying all reportables output."""
    html_lines = []
    grouped, ungrouped = _group_reportables(reportables)

    for group in grouped:
        html_lines.append(f"<h3 class='reportable-group-title'>{_safe(group)}</h3>")
        for reportable in grouped[group]:
            html_lines.extend(render_reportable(reportable, reportables_path))
    for reportable in ungrouped:
        html_lines.extend(render_reportable(reportable, reportables_path))
    return html_lines


def render_reportable(reportable: Reportable, reportables_path: str) -> List[str]:
    """Render a reportable to file and get the HTML to display it. A reportable that
    fails to render is replaced by its error, it never stops the report."""
    html_lines = ["<div class='reportable'>", f"<a name='{reportable.name}'></a>"]
    html_lines.append(
        f"<h3>{_safe(reportable.name)} <small>({_safe(reportable.source)})</small></h3>"
    )

    reportable.path = reportables_path  # path for saving
    try:
        if not reportable.rendered:
            reportable.render()
            reportable.rendered = True
        reportable.path = "reportables"  # path relative to html report for displaying
        reportable_html = reportable.html()
    except Exception as e:
        logging.error("Reportable '%s' could not be rendered: %s" % (reportable.name, e))
        reportable_html = f"<p style='color: red'>{_safe(e)}</p>"
    if isinstance(reportable_html, list):
        html_lines.extend(reportable_html)
    elif reportable_html is not None:
        html_lines.append(reportable_html)
    html_lines.append("<p><a href='#reportables'>back to reportables</a></p>")
    html_lines.append("</div>")
    return html_lines


def render_report_variants(result) -> List[str]:
    """Summarize the outcome of every branch variant and merge."""
    html_lines = ["<a name='variants'></a>", "<h2>Variants</h2>"]
    html_lines.append("<p><a href='#top'>back to top</a></p>")
    branches = result.branches if result is not None else []
    merges = result.merges if result is not None else []
    if len(branches) == 0 and len(merges) == 0:
        html_lines.append("<p>No branches were run.</p>")
        return html_lines

    for branch in branches:
        state = "complete" if branch.succeeded else "partial" if branch.partial else "failed"
        html_lines.append(f"<h3>{_safe(branch.label)} - {state}</h3>")
        html_lines.append(
            "<table border='1' cellspacing='0'><tr><th>Variant</th><th>Group</th>"
            "<th>Key</th><th>Status</th><th>Invocations</th><th>Outputs</th><th>Error</th></tr>"
        )
        for variant in branch.variants:
            color = STATUS_COLORS.get(variant.status.value, "")
            error = ""
            if variant.error is not None:
                error = f"{_safe(variant.failed_stage)}: {_safe(variant.error)}"
            html_lines.append(
                "<tr>"
                f"<td>{_safe(variant.label)}</td>"
                f"<td>{_safe(variant.group or '')}</td>"
                f"<td>{_safe(variant.key or '')}</td>"
                f"<td><span style='color: {color}'>{variant.status.value}</span></td>"
                f"<td>{', '.join(variant.invocation_ids)}</td>"
                f"<td>{_safe(', '.join(str(ref) for ref in variant.outputs))}</td>"
                f"<td>{error}</td>"
                "</tr>"
            )
        html_lines.append("</table>")

    if len(merges) > 0:
        html_lines.append("<h3>Merges</h3><ul>")
        for merge in merges:
            invocation = merge.invocation
            line = f"<li>[{invocation.id}] {_safe(invocation.comment)} - {invocation.status.value}"
            if invocation.error is not None:
                line += f" ({_safe(invocation.error)})"
            html_lines.append(line + "</li>")
        html_lines.append("</ul>")
    return html_lines


def render_report_provenance(log) -> List[str]:
    """The table of every invocation."""
    html_lines = ["<a name='provenance'></a>", "<h2>Provenance</h2>"]
    html_lines.append("<p><a href='#top'>back to top</a></p>")
    df = log.to_dataframe()
    if len(df) == 0:
        html_lines.append("<p>No invocations were recorded.</p>")
        return html_lines
    df = df.set_index("id")
    df["start"] = df["start"].map(
        lambda start: start.strftime("%H:%M:%S") if start is not None and not pd.isna(start) else ""
    )
    html_lines.extend(render_dataframe(df, float_prec=3))
    return html_lines


def render_report_stage_map(log, graphs_path) -> List[str]:
    """Generate and write out the graphviz graph for the stages and return the html to display it."""
    graph = map_full_svg(log)
    with open(f"{graphs_path}/full.gv", "w") as outfile:
        outfile.write(graph.source)

    html_lines = []
    html_lines.append("<a name='map'></a>")
    html_lines.append("<h2>Stages Map</h2>")
    html_lines.append("<p><a href='#top'>back to top</a></p>")
    html_lines.append(render_graph(graph))
    return html_lines


def render_report_log(log) -> List[str]:
    """The plain text rendering of the provenance log."""
    return [
        "<a name='log'></a>",
        "<h2>Log</h2>",
        "<p><a href='#top'>back to top</a></p>",
        f"<pre>{_safe(log.render())}</pre>",
    ]


def prepare_report_path(output_path, report_name):
    """Set up any necessary folders for a report at the given location. This will not error if the location already has a report in it, but will remove existing reportables and graphs."""

    folder_path = os.path.join(output_path, report_name)
    logging.info("Preparing report path '%s'..." % folder_path)

    graphs_path = os.path.join(folder_path, "graphs")
    reportables_path = os.path.join(folder_path, "reportables")

    if os.path.exists(graphs_path):
        shutil.rmtree(graphs_path)
    if os.path.exists(reportables_path):
        shutil.rmtree(reportables_path)

    os.makedirs(folder_path, exist_ok=True)
    os.mkdir(graphs_path)
    os.mkdir(reportables_path)

    return folder_path, graphs_path, reportables_path


def run_report(workspace, result, output_path, name, css_path=None) -> str:
    """Generate a full HTML report for the given workspace.

    Everything in the report comes from the workspace's provenance log and run
    metadata, so a report can be rendered after the workspace is torn down or when
    the run ended in an error.

    Args:
        workspace (Workspace): The workspace to report on.
        result (RunResult): The outcome of the run, for the branch and merge summaries.
            May be ``None`` if the run never got to the pipeline.
        output_path (str): The string path to the root directory of where you want the report stored.
        name (str): The name to store this report under (will generate a folder of this name in the
            output_path.)
        css_path (str): The path to a css file to use for styling the report. (This file will get
            copied into the output_path/name folder.)

    Returns:
        The path to the report's index.html.
    """
    folder_path, graphs_path, reportables_path = prepare_report_path(output_path, name)
    reportables = collect_reportables(workspace.log)

    html_lines = ["<html>"]
    html_lines.extend(render_report_head(workspace))
    html_lines.append("<body>")
    html_lines.extend(render_report_info_block(workspace, result))
    html_lines.extend(render_report_toc(len(reportables) > 0))

    if len(reportables) > 0:
        html_lines.extend(render_report_reportables_toc(reportables))
        html_lines.extend(render_report_all_reportables(reportables, reportables_path))

    html_lines.extend(render_report_variants(result))
    html_lines.extend(render_report_provenance(workspace.log))
    html_lines.extend(render_report_stage_map(workspace.log, graphs_path))
    html_lines.extend(render_report_log(workspace.log))
    html_lines.append("</body></html>")

    index_path = f"{folder_path}/index.html"
    with open(index_path, "w") as outfile:
        outfile.write("\n".join(html_lines))

    with open(f"{folder_path}/run_info.json", "w") as outfile:
        json.dump(workspace.run_info or {}, outfile, indent=4)

    with open(f"{folder_path}/provenance.txt", "w") as outfile:
        outfile.write(workspace.log.render())

    if css_path is not None:
        if not os.path.exists(css_path):
            logging.warning("Reports CSS file %s not found" % css_path)
        else:
            shutil.copyfile(css_path, f"{folder_path}/style.css")

    return index_path


def _artifact_node(ref) -> str:
    return "a_" + utils.slugify(f"{ref.subject}_{ref.kind.value}_{ref.name}_{ref.version}")


def map_full_svg(log, colors=None):
    """Create a graphviz dot graph of a provenance log: every stage invocation and its
    input/output artifacts, with the invocations of each branch variant clustered
    together.

    Args:
        log (ProvenanceLog): The log to base the graph off of.
        colors: A list of colors to use for the variant clusters if you wish to
            override the default.

    Important:
        Rendering the graph requires graphviz to be installed.
    """
    colors = colors if colors is not None else COLORS

    dot = Digraph()
    dot.attr(compound="true")
    dot.attr(fontsize="10")
    dot.attr(nodesep=".15")
    dot.attr(ranksep=".15")

    artifacts = {}
    variants = []
    for entry in log.invocations:
        for ref in entry.inputs + entry.outputs:
            artifacts[_artifact_node(ref)] = ref
        if entry.variant is not None and entry.variant not in variants:
            variants.append(entry.variant)

    for node, ref in artifacts.items():
        dot.node(node, f"{ref.kind.value}\\n{ref.name}@{ref.version}", shape="rectangle", fontsize="10", height=".20")

    def add_invocation(graph, entry):
        label = f"{entry.id} {entry.stage_id}"
        if entry.status != Status.SUCCEEDED:
            label += f"\\n({entry.status.value})"
        fill = "white"
        if entry.failed:
            fill = COLOR_VALS["salmon"]
        elif entry.status == Status.SKIPPED:
            fill = COLOR_VALS["silver"]
        graph.node(entry.id, label, style="filled", fillcolor=fill, fontsize="12")

    for index, variant in enumerate(variants):
        with dot.subgraph(name=f"cluster_{index}") as c:
            c.attr(color=_get_color(index, colors))
            c.attr(style="filled")
            c.attr(label=variant)
            for entry in log.invocations:
                if entry.variant == variant:
                    add_invocation(c, entry)

    for entry in log.invocations:
        if entry.variant is None:
            add_invocation(dot, entry)
        for ref in entry.inputs:
            dot.edge(_artifact_node(ref), entry.id, arrowsize=".65")
        for ref in entry.outputs:
            dot.edge(entry.id, _artifact_node(ref), arrowsize=".65")

    dot.format = "svg"
    return dot


def _get_color(index, colors=None):
    colors = colors if colors is not None else COLORS
    name = colors[index % len(colors)]
    return COLOR_VALS.get(name, name)


def render_graph(graph):
    """Attempts to return the unicode text for the graph svg."""
    try:
        return graph.pipe().decode("utf-8")
    except ExecutableNotFound:
        logging.error(
            "Graphviz not installed, if using conda try 'conda install python-graphviz'."
        )
        return "<p style='color: red'>No graphviz executable found, cannot render stage maps.</p>"
    except Exception as e:
        logging.error("Graphviz error: %s", e)
        return f"<p style='color: red'>{_safe(e)}</p>"


def update_report_index(workspaces_path, reports_root_dir):
    """Generate an index.html with a summary line for each pipeline run report in the
    passed directory.

    Args:
        workspaces_path (str): The directory holding the workspaces and run database,
            listed at the top of the index.
        reports_root_dir (str): The directory containing the report folders. This is where the output
            index.html is placed.
    """
    logging.info("Updating report index...")

    runs = []
    pipeline_runs = {}
    informal_runs = []

    for filename in sorted(os.listdir(reports_root_dir)):
        if filename == "_latest":
            continue

        full_filename = f"{reports_root_dir}/{filename}"
        if not os.path.isdir(full_filename):
            continue

        info = None
        if os.path.exists(f"{full_filename}/run_info.json"):
            with open(f"{full_filename}/run_info.json", "r") as infile:
                info = json.load(infile)
        if not info:
            informal_runs.append(filename)
            continue

        info["order_timestamp"] = datetime.datetime.strptime(
            info["timestamp"], utils.TIMESTAMP_FORMAT
        )
        runs.append(info)
        pipeline_runs.setdefault(info["pipeline_name"], []).append(info)

    logging.info("    %s labeled reports found", str(len(runs)))
    logging.info("    %s informal reports found", str(len(informal_runs)))

    html = [
        "<html>",
        "<head><title>Reports Index</title>",
        "<link rel='stylesheet' href='style.css'></head>",
        "<body>",
        "<h1 id='title'>Reports</h1>",
        "<p><a href='_latest/index.html'>View latest report</a></p>",
        f"<p>Workspaces: {_safe(workspaces_path)}</p>",
    ]

    html.extend(["<h2>Pipelines</h2>", "<ul>"])
    for pipeline in pipeline_runs:
        html.append(f"<li><a href='#{pipeline}'>{_safe(pipeline)}</a></li>")
    html.append("<li><a href='#ALL'>ALL RUNS</a></li>")
    html.append("</ul>")

    for pipeline in pipeline_runs:
        html.extend([f"<a name='{pipeline}'></a>", f"<h2>{_safe(pipeline)}</h2>", "<ul>"])
        for run in sorted(
            pipeline_runs[pipeline], key=lambda i: i["order_timestamp"], reverse=True
        ):
            html.append(_get_run_index_line(run))
        html.append("</ul>")

    html.extend(["<a name='ALL'></a>", "<h2>All labeled runs</h2>", "<ul>"])
    for run in sorted(runs, key=lambda i: i["order_timestamp"], reverse=True):
        html.append(_get_run_index_line(run))
    html.append("</ul>")

    html.append("<h2>Informal reports</h2>")
    html.append("<ul>")
    for filename in informal_runs:
        html.append(f"<li><a href='{filename}/index.html'>{_safe(filename)}</a></li>")
    html.append("</ul></body></html>")

    with open(f"{reports_root_dir}/index.html", "w") as outfile:
        outfile.write("\n".join(html))


def _get_run_index_line(run):
    desc_line = "<li>"
    color = STATUS_COLORS.get(run["status"])
    if color is not None:
        desc_line += f"<span style='background-color: {color}'>&nbsp;&nbsp;</span>"

    desc_line += f" <a href='{run['reference']}/index.html'>{_safe(run['reference'])}</a> "

    if "hostname" in run:
        desc_line += f"[{_safe(run['hostname'])}] "
    desc_line += f"workspace <b>{_safe(run['workspace'])}</b> "

    if run["status"] == "error":
        desc_line += f"<span style='color: red'>{_safe(run.get('error'))}</span> "
    failed = run.get("failed_invocations", [])
    if len(failed) > 0:
        desc_line += f"<span style='color: orange'>({len(failed)} failed invocations)</span> "

    if run.get("notes"):
        shortform_notes = run["notes"]
        if "\n" in shortform_notes:
            shortform_notes = shortform_notes[: shortform_notes.index("\n")]
        desc_line += f"</br><span style='color: #444; font-size: 10pt; font-style: italic;'>{_safe(shortform_notes)}</span>"

    desc_line += f"</br>&nbsp;&nbsp;&nbsp;&nbsp;&nbsp;<span style='color: #a0a0a0; font-family: monospace'>{_safe(run['cli'])}</span>"
    desc_line += "</li>"
    return desc_line
