"""
Structured exec helper, copied verbatim onto the remote target.

Usage: helper [--workdir DIR] [--env K=V]... -- COMMAND [ARGS...]

Changes directory, applies the environment bindings and replaces itself with
COMMAND, so arguments reach the program without another round of shell
parsing. Standard library only: the target may have nothing but python3.
"""

import os
import sys

USAGE = "usage: exec [--workdir DIR] [--env K=V]... -- COMMAND [ARGS...]"


def parse_args(args):
    workdir = None
    env = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--workdir" and i + 1 < len(args):
            workdir = args[i + 1]
            i += 2
        elif arg == "--env" and i + 1 < len(args):
            key, sep, value = args[i + 1].partition("=")
            if not sep or not key:
                raise ValueError(f"invalid env var {args[i + 1]!r} (expected K=V)")
            env.append((key, value))
            i += 2
        elif arg == "--":
            command = args[i + 1:]
            if not command:
                raise ValueError("no command specified")
            return workdir, env, command
        else:
            raise ValueError(f"unknown flag {arg!r} (use -- before command)")
    raise ValueError("no command specified")


def main(argv=None):
    args = sys.argv[1:] if argv is None else argv
    try:
        workdir, env, command = parse_args(args)
    except ValueError as exc:
        print(f"exec: {exc}\n{USAGE}", file=sys.stderr)
        return 2

    if workdir:
        try:
            os.chdir(workdir)
        except OSError as exc:
            print(f"exec: chdir {workdir!r}: {exc}", file=sys.stderr)
            return 1
    for key, value in env:
        os.environ[key] = value

    try:
        os.execvp(command[0], command)
    except FileNotFoundError:
        print(f"exec: command not found: {command[0]}", file=sys.stderr)
        return 127
    except OSError as exc:
        print(f"exec: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
