import argparse
import functools
import os
import shutil
import signal
import subprocess
import sys
import tempfile
from collections import Counter, namedtuple

import fetchcfr
import unjar

CFR_JAR = "cfr.jar"
DEFAULT_OUT = "./src"
CLASS_EXT = ".class"
SOURCE_EXT = ".java"
INNER_MARK = "$"

DECOMPILED = "decompiled"
COPIED = "copied"
EXISTS = "exists"

Config = namedtuple("Config", ["jar", "out", "class_name", "cfr_jar", "java", "fixed_class"])


class Jar2SrcError(Exception):
    pass


class PreconditionError(Jar2SrcError):
    pass


class WalkError(Jar2SrcError):
    pass


class MapError(Jar2SrcError):
    pass


class ProduceError(Jar2SrcError):
    pass


def walk(root):
    """Yield every file under root, depth first, leaving out inner class files.

    Files whose name carries the '$' marker (Outer$Inner.class, Outer$1.class)
    are never yielded: CFR rebuilds them inline from the outer class.
    """
    root = os.path.abspath(root)
    try:
        with os.scandir(root) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as e:
        raise WalkError(f"unable to read directory {root}: {e}") from e

    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            yield from walk(entry.path)
        elif INNER_MARK not in entry.name:
            yield entry.path


def map_output_path(file_path, staging_root, output_root):
    path = file_path.replace("\\", "/")
    staging = staging_root.replace("\\", "/").rstrip("/")
    if not path.startswith(staging + "/"):
        raise MapError(f"{file_path} is not under {staging_root}")

    out = output_root.replace("\\", "/").rstrip("/") + path[len(staging):]
    out_dir = out.rsplit("/", 1)[0]
    if out_dir and not os.path.isdir(out_dir):
        print(f"[INFO] creating output directory: {out_dir}")
        try:
            os.makedirs(out_dir, exist_ok=True)
        except OSError as e:
            raise MapError(f"unable to create output directory {out_dir}: {e}") from e

    if out.endswith(CLASS_EXT):
        out = out[:-len(CLASS_EXT)] + SOURCE_EXT
    return out


def class_name_for(file_path, staging_root):
    rel = os.path.relpath(file_path, staging_root).replace(os.sep, "/")
    if rel.endswith(CLASS_EXT):
        rel = rel[:-len(CLASS_EXT)]
    return rel.replace("/", ".")


def run_cfr(java, cfr_jar, class_file, class_name):
    cmd = [java, "-jar", cfr_jar, class_file, class_name]
    try:
        result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except OSError as e:
        raise ProduceError(f"unable to start {java}: {e}") from e
    if result.returncode != 0:
        err = result.stderr.decode("utf-8", errors="replace").strip()
        raise ProduceError(f"unable to decompile {class_file} (exit {result.returncode}): {err}")
    return result.stdout


def _write_atomic(path, data):
    tmp = path + ".part"
    try:
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except OSError:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise


def produce(class_file, class_name, output_path, decompile):
    """Write the artifact for one staged file and report what was done.

    An existing output is left untouched, so a rerun over the same output
    directory only fills in what is missing.
    """
    if os.path.exists(output_path):
        return EXISTS

    if output_path.endswith(SOURCE_EXT) and class_file.endswith(CLASS_EXT):
        source = decompile(class_file, class_name)
        try:
            _write_atomic(output_path, source)
        except OSError as e:
            raise ProduceError(f"unable to write output to {output_path}: {e}") from e
        return DECOMPILED

    try:
        shutil.copyfile(class_file, output_path)
    except OSError as e:
        raise ProduceError(f"unable to copy {class_file}: {e}") from e
    return COPIED


def check_preconditions(cfr_jar, fetch=False):
    if not os.path.isfile(cfr_jar):
        if not fetch:
            raise PreconditionError(f"{cfr_jar} not found (use --fetch-cfr to download it)")
        try:
            fetchcfr.fetch_cfr(cfr_jar)
        except fetchcfr.FetchError as e:
            raise PreconditionError(str(e)) from e

    java = shutil.which("java")
    if java is None:
        raise PreconditionError("no java installed, please install java")
    print(f"[INFO] java found in path: {java}")
    return java


def check_jar(jar):
    if not jar:
        raise PreconditionError("no jar file provided")
    if not os.path.isfile(jar):
        raise PreconditionError(f"jar file does not exist: {jar}")


def run(config, decompile=None):
    if decompile is None:
        decompile = functools.partial(run_cfr, config.java, config.cfr_jar)
    counts = Counter()
    produced = {}

    with tempfile.TemporaryDirectory(prefix="cfr") as staging:
        unjar.unzip(config.jar, staging)
        print(f"[INFO] unzipped jar file to: {staging}")

        try:
            os.makedirs(config.out, exist_ok=True)
        except OSError as e:
            raise MapError(f"unable to create output directory {config.out}: {e}") from e
        print(f"[INFO] output directory: {config.out}")
        print("[INFO] extracting classes...")

        for path in walk(staging):
            out = map_output_path(path, staging, config.out)
            if config.fixed_class:
                name = config.class_name
            else:
                name = class_name_for(path, staging)
            status = produce(path, name, out, decompile)
            counts[status] += 1
            if status != EXISTS:
                produced[out] = path
                print(f"[INFO] {status}: {out}")
            elif out in produced:
                first = os.path.relpath(produced[out], staging)
                print(f"[SKIP] {out} (collides with {first}, "
                      f"{os.path.relpath(path, staging)} not written)")
            else:
                print(f"[SKIP] {out}")

    print(f"[INFO] done: {counts[DECOMPILED]} decompiled, "
          f"{counts[COPIED]} copied, {counts[EXISTS]} already present")
    return counts


def build_argument_parser():
    psr = argparse.ArgumentParser(prog="jar2src",
                                  description="Decompile every class of a jar into a source tree")
    psr.add_argument("class_name", nargs="?", default=None,
                     help="fully-qualified class name handed to CFR (see --fixed-class)")
    psr.add_argument("-jar", dest="jar", default="", help="path to the jar file to pull classes from")
    psr.add_argument("-out", dest="out", default=DEFAULT_OUT, help="path to the output directory")
    psr.add_argument("-cfr", dest="cfr_jar", default=CFR_JAR, help="path to the CFR decompiler jar")
    psr.add_argument("--fetch-cfr", action="store_true", help="download CFR when it is missing")
    psr.add_argument("--fixed-class", action="store_true",
                     help="pass class_name to CFR for every class instead of each file's own name")
    return psr


def _terminate(signum, frame):
    raise SystemExit(128 + signum)


def main(argv=None):
    args = build_argument_parser().parse_args(argv)

    # SIGTERM unwinds through run so staging is removed
    previous = signal.signal(signal.SIGTERM, _terminate)
    try:
        if args.fixed_class and not args.class_name:
            raise PreconditionError("--fixed-class needs a class name")
        java = check_preconditions(args.cfr_jar, fetch=args.fetch_cfr)
        check_jar(args.jar)
        if args.class_name and not args.fixed_class:
            print(f"[INFO] class names are taken from each class file; "
                  f"pass --fixed-class to hand {args.class_name} to every class")
        config = Config(args.jar, args.out, args.class_name, args.cfr_jar, java, args.fixed_class)
        run(config)
    except (Jar2SrcError, unjar.ExtractError) as e:
        print(f"[ERROR] {e}")
        return 1
    except KeyboardInterrupt:
        print("[ERROR] interrupted")
        return 130
    finally:
        if previous is not None:
            signal.signal(signal.SIGTERM, previous)
    return 0


if __name__ == "__main__":
    sys.exit(main())
