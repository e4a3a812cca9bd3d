"""Command line interface for running headfactory pipelines and managing their reports.

This is effectively all of the argparse and completer logic - we want the imports
in this file to be minimal so that the startup is very fast. (Use lazy imports
where it makes sense/is feasible.)

This file contains a ``__name__ == "__main__"`` and can be run directly.
"""

import argparse
import sys

import argcomplete


def completer_pipelines(**kwargs) -> list[str]:
    """Argcomplete pipeline name completer, lists every module in the pipelines
    package that declares a ``build`` function."""
    # NOTE: importing "lazily" to reduce startup time of CLI
    from headfactory.driver import list_pipelines

    return [name.split(" - ")[0] for name in list_pipelines()]


def _run_string() -> str:
    """Reconstruct what the CLI call for this run was, leaving out the notes since
    those are already included in the report."""
    command_parts = sys.argv[1:]

    fixed_parts = []
    skip_next = False
    for part in command_parts:
        if skip_next:
            skip_next = False
            continue
        if part == "--notes":
            skip_next = True
            continue
        if " " in part and not part.startswith('"') and not part.endswith('"'):
            part = f'"{part}"'
        fixed_parts.append(part)
    return "headfactory " + " ".join(fixed_parts)


def cmd_run(args) -> int:
    """``headfactory [pipeline_name]`` - run the specified pipeline, this is the
    "main" command."""
    # NOTE: importing "lazily" to reduce startup time of CLI
    import logging

    from headfactory.driver import CapabilityUnavailable, run_pipeline

    try:
        result = run_pipeline(
            args.pipeline_name,
            input_dir=args.input_dir,
            workspace_name=args.workspace,
            simulate=args.simulate,
            parallel=int(args.parallel),
            overwrite=args.overwrite,
            dry=args.dry,
            report=not args.no_report,
            log=not args.no_log,
            log_debug=args.verbose,
            quiet=args.quiet,
            plain=args.plain,
            no_color=args.no_color,
            notes=args.notes,
            run_string=_run_string(),
        )
    except CapabilityUnavailable as e:
        print(f"Cannot run '{args.pipeline_name}': {len(e.missing)} missing capabilities")
        for missing in e.missing:
            print("\t" + missing)
        return 1
    except ValueError as e:
        print(f"Cannot run '{args.pipeline_name}': {e}")
        return 1
    except KeyboardInterrupt:
        logging.error("Interrupted")
        return 1

    if not result.succeeded:
        return 1
    return 0


def cmd_ls():
    """``headfactory ls`` - list out the available pipelines."""
    # NOTE: importing "lazily" to reduce startup time of CLI
    from headfactory.driver import list_pipelines

    print("PIPELINES:")
    for pipeline in list_pipelines():
        print("\t" + pipeline)


def cmd_reports(args):
    """``headfactory reports`` - start up a simple python server to serve from
    the reports folder. This is to allow browsing reports through something like
    an SSH session.
    """
    # NOTE: importing "lazily" to reduce startup time of CLI
    import subprocess

    from headfactory import reporting, utils

    config = utils.get_configuration()
    if args.update:
        utils.init_logging(None)
        reporting.update_report_index(config["workspaces_path"], config["reports_path"])
        return
    subprocess.run(
        [sys.executable, "-m", "http.server", str(args.port), "--bind", args.host],
        cwd=config["reports_path"],
    )


def main():
    """'Main' command line entrypoint, parses command line flags and makes the
    appropriate ``run_pipeline()`` call as relevant."""

    parser = argparse.ArgumentParser(
        description="Run a headfactory pipeline.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    headfactory fem_charm --input-dir ~/data
    headfactory fem_charm --simulate --dry
    headfactory fem_charm --parallel 3 --notes "rerun with new tensors"

    headfactory ls  # lists all available pipelines
    headfactory reports --port 8000 --host 0.0.0.0
""",
    )
    parser.add_argument("pipeline_name").completer = completer_pipelines

    parser.add_argument(
        "--notes",
        dest="notes",
        default=None,
        help="Associate some notes with this run, included in the run metadata and report.",
    )

    inputs_group = parser.add_argument_group(
        "Inputs", "Choose the data and the collaborators to run with."
    )
    outputs_group = parser.add_argument_group(
        "Outputs", "Control what gets created from a pipeline run."
    )
    display_group = parser.add_argument_group(
        "Display", "Configure console output during pipeline execution."
    )
    parallel_group = parser.add_argument_group("Parallel execution")
    reports_group = parser.add_argument_group(
        "Reports", "Arguments for use with 'headfactory reports'"
    )

    # ---- INPUTS ----
    inputs_group.add_argument(
        "-i",
        "--input-dir",
        dest="input_dir",
        default=None,
        help="The folder containing the input dataset, overriding the pipeline's default.",
    )
    inputs_group.add_argument(
        "--simulate",
        dest="simulate",
        action="store_true",
        help="Use the in-process simulated collaborators rather than the external tools. This skips the checks for executables and input files.",
    )

    # ---- OUTPUTS ----
    outputs_group.add_argument(
        "-w",
        "--workspace",
        dest="workspace",
        default=None,
        help="The workspace name to use rather than the pipeline's default. NOTE: any existing workspace with this name is deleted.",
    )
    outputs_group.add_argument(
        "--overwrite",
        dest="overwrite",
        action="store_true",
        help="Let every stage supersede existing artifacts with the same name.",
    )
    outputs_group.add_argument(
        "--dry",
        dest="dry",
        action="store_true",
        help="Do a dry run: keeps everything in memory, suppressing all file output.",
    )
    outputs_group.add_argument(
        "--no-report",
        dest="no_report",
        action="store_true",
        help="Don't render the HTML report.",
    )
    outputs_group.add_argument(
        "--no-log",
        dest="no_log",
        action="store_true",
        help="Specify this flag to not store the log.",
    )

    # ---- DISPLAY ----
    display_group.add_argument(
        "-v",
        "--verbose",
        dest="verbose",
        action="store_true",
        help="Log at debug level.",
    )
    display_group.add_argument(
        "--quiet",
        dest="quiet",
        action="store_true",
        help="Suppress all log output to console.",
    )
    display_group.add_argument(
        "--no-color", dest="no_color", action="store_true", help="Less fancy colors."
    )
    display_group.add_argument(
        "--plain",
        dest="plain",
        action="store_true",
        help="Print normal logging rather than rich colored logs. This will output the exact same text printed into the file log.",
    )

    # ---- PARALLEL ----
    parallel_group.add_argument(
        "--parallel",
        dest="parallel",
        default=1,
        help="Run up to n variants of each branch concurrently. Variants containing a mutation gate still run alone.",
    )

    # ---- REPORTS ----
    reports_group.add_argument(
        "--port",
        dest="port",
        default=8080,
        help="Only used for 'headfactory reports', specifies which port to run the simple server on.",
    )
    reports_group.add_argument(
        "--host",
        dest="host",
        default="127.0.0.1",
        help="Only used for 'headfactory reports', specifies which hostname to run the simple server on.",
    )
    reports_group.add_argument(
        "--update",
        dest="update",
        action="store_true",
        help="Only used for 'headfactory reports', rebuilds the report index from the run database.",
    )
    argcomplete.autocomplete(parser, always_complete_options=False)

    args = parser.parse_args()

    if args.pipeline_name == "ls":
        cmd_ls()
        return

    elif args.pipeline_name == "reports":
        cmd_reports(args)
        return

    sys.exit(cmd_run(args))


if __name__ == "__main__":
    main()
