#!/usr/bin/env python3
import argparse
import logging
import os
import sys
import threading
import time
from importlib import metadata
from typing import Optional

from .em import EM_MAX_ITERATIONS, EM_TOLERANCE
from .io import read_genotype_likelihoods, read_positions, write_results
from .pairwise import LDOptions, PairwiseLD

# Exit status of a run cancelled by the user
EXIT_INTERRUPTED = 130


def _construct_cmd_string(args, parser):
    """Reconstruct the command line string."""
    cmd_str = "ngsld"
    for arg, value in vars(args).items():
        if arg == "verbose":
            cmd_str += " -v" * value
        elif arg not in ["func", "cmd"]:
            if value is True:
                cmd_str += f" --{arg.replace('_', '-')}"
            elif value is not False and value is not None:
                cmd_str += f" --{arg.replace('_', '-')} {value}"
    return cmd_str


def _setup_logging(output_fp: Optional[str], verbose: int):
    """Set up logging configuration; -vv also turns on debug messages."""
    log_format = '%(asctime)s %(levelname)s %(module)s - %(funcName)s: %(message)s'
    date_format = '%Y-%m-%d %H:%M:%S'

    handlers = []
    if output_fp:
        handlers.append(logging.FileHandler(f"{output_fp}.log"))
    if verbose:
        handlers.append(logging.StreamHandler(sys.stdout))
    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=logging.DEBUG if verbose > 1 else logging.INFO,
        format=log_format,
        datefmt=date_format,
        handlers=handlers,
        force=True,
    )


def _ld(
    geno: str,
    out: str,
    n_ind: Optional[int],
    n_sites: Optional[int],
    probs: bool,
    log_scale: bool,
    binary: bool,
    pos: Optional[str],
    max_kb_dist: float,
    min_r2: float,
    call_geno: bool,
    n_thresh: float,
    call_thresh: float,
    pearson: bool,
    em_tol: float,
    em_max_iter: int,
    n_threads: int,
    name: str,
    verbose: int,
    quiet: bool,
) -> int:
    """Run pairwise LD estimation.

    Args:
        geno: Path to genotype likelihood/probability file
        out: Output file path (.h5/.hdf5 for HDF5, .gz for gzipped text)
        n_ind: Number of individuals, inferred from text input if None
        n_sites: Number of sites, inferred from text input if None
        probs: Input holds genotype probabilities
        log_scale: Input is natural-log scaled
        binary: Input is raw float64
        pos: Path to position file
        max_kb_dist: Maximum distance between sites in kb; 0 or less disables filtering
        min_r2: Minimum r^2 for a pair to be written
        call_geno: Call genotypes before estimating LD
        n_thresh: Minimum posterior probability for a genotype to count as observed
        call_thresh: Minimum posterior probability to call a genotype
        pearson: Also report Pearson's r between expected genotypes
        em_tol: EM convergence tolerance
        em_max_iter: EM iteration cap
        n_threads: Number of worker threads
        name: Run name used as the HDF5 group
        verbose: Verbosity level; 1 logs to stdout, 2 adds debug messages
        quiet: Whether to suppress all output except errors

    Returns:
        Exit status: 0, or EXIT_INTERRUPTED if the run was cancelled

    Raises:
        ValueError: If arguments are invalid or inconsistent with the input
        FileNotFoundError: If input files don't exist
    """
    if not quiet:
        sys.stdout.write("Estimating pairwise LD...\n")
        sys.stdout.flush()
    start_time = time.time()

    # Validate input files exist
    if not os.path.exists(geno):
        raise FileNotFoundError(f"Genotype file not found: {geno}")
    if pos is not None and not os.path.exists(pos):
        raise FileNotFoundError(f"Position file not found: {pos}")

    max_dist = max_kb_dist * 1000 if max_kb_dist > 0 else -1
    if pos is None and max_dist >= 0:
        raise ValueError(
            "Position file (--pos) is necessary in order to filter by maximum distance "
            "(set --max-kb-dist 0 to disable)"
        )

    # Either threshold implies calling
    if n_thresh > 0 or call_thresh > 0:
        call_geno = True
    if call_geno and not probs:
        raise ValueError("Can only call genotypes from genotype probabilities (--probs)")

    options = LDOptions(
        max_dist=max_dist,
        n_threads=n_threads,
        call_geno=call_geno,
        call_thresh=call_thresh,
        n_thresh=n_thresh,
        pearson=pearson,
        min_r2=min_r2,
        em_tolerance=em_tol,
        em_max_iterations=em_max_iter,
    )

    logging.info(f"Loading genotypes from {geno}")
    store = read_genotype_likelihoods(geno, n_ind=n_ind, n_sites=n_sites,
                                      probs=probs, log_scale=log_scale, binary=binary)
    logging.info(f"Loaded {store.n_ind} individuals at {store.n_sites} sites")

    positions = None
    if pos is not None:
        logging.info(f"Loading positions from {pos}")
        positions = read_positions(pos, n_sites=store.n_sites)

    abort = threading.Event()
    results = PairwiseLD.compute(store, positions, options, abort=abort)

    frame = results.to_frame(min_r2=min_r2, pearson=pearson)
    labels = None if positions is None else positions.labels
    write_results(frame, out, labels=labels, name=name)
    logging.info(f"Wrote {len(frame)} pairs to {out}")

    if results.aborted:
        sys.stderr.write(f"Interrupted: wrote {len(frame)} of {len(results)} pairs\n")
        return EXIT_INTERRUPTED

    end_time = time.time()
    if not quiet:
        sys.stdout.write(f"Completed in {end_time - start_time:.2f} s\n")
        sys.stdout.flush()
    return 0


def _add_io_arguments(parser):
    """Add input/output arguments."""
    parser.add_argument("--geno", type=str, required=True,
                        help="Genotype likelihoods or probabilities, one row per site with 3 values per individual")
    parser.add_argument("--probs", action="store_true", default=False,
                        help="Input holds genotype posterior probabilities")
    parser.add_argument("--log-scale", action="store_true", default=False,
                        help="Input is natural-log scaled")
    parser.add_argument("--binary", action="store_true", default=False,
                        help="Input is raw float64 instead of text")
    parser.add_argument("--n-ind", type=int, default=None,
                        help="Number of individuals (inferred from text input if omitted)")
    parser.add_argument("--n-sites", type=int, default=None,
                        help="Number of sites (inferred from text input if omitted)")
    parser.add_argument("--pos", type=str, default=None,
                        help="Site positions: 'chrom<TAB>pos' per line, or positions only")
    parser.add_argument("--out", type=str, required=True,
                        help="Output file (.h5/.hdf5 for HDF5, .gz for gzipped text)")
    parser.add_argument("--name", type=str, default="ld",
                        help="Run name, used as the group name in HDF5 output")


def _add_ld_arguments(parser):
    """Add LD estimation arguments."""
    parser.add_argument("--max-kb-dist", type=float, default=100,
                        help="Maximum distance between sites in kb (0 to disable)")
    parser.add_argument("--min-r2", type=float, default=0.0,
                        help="Minimum r^2 for a pair to be written")
    parser.add_argument("--call-geno", action="store_true", default=False,
                        help="Call genotypes before estimating LD (requires --probs)")
    parser.add_argument("--n-thresh", type=float, default=0.0,
                        help="Minimum posterior probability of the most likely genotype "
                             "for the individual to count as observed (implies --call-geno)")
    parser.add_argument("--call-thresh", type=float, default=0.0,
                        help="Minimum posterior probability of the most likely genotype "
                             "to call it (implies --call-geno)")
    parser.add_argument("--pearson", action="store_true", default=False,
                        help="Also report Pearson's r between expected genotypes")
    parser.add_argument("--em-tol", type=float, default=EM_TOLERANCE,
                        help="EM convergence tolerance")
    parser.add_argument("--em-max-iter", type=int, default=EM_MAX_ITERATIONS,
                        help="Maximum number of EM iterations")
    parser.add_argument("--n-threads", type=int, default=1,
                        help="Number of worker threads")


def _add_common_arguments(parser, version: str):
    """Add arguments that are common to all runs."""
    parser.add_argument("--version", action="version", version=f"%(prog)s {version}")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Log progress to stdout; repeat for debug messages")
    parser.add_argument("-q", "--quiet", action="store_true", default=False)


def _main(args):
    # Setup version string
    version = f"v{metadata.version('ngsld')}"

    argp = argparse.ArgumentParser(
        prog="ngsld",
        description="Pairwise linkage disequilibrium from genotype likelihoods",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_io_arguments(argp)
    _add_ld_arguments(argp)
    _add_common_arguments(argp, version)

    # Parse arguments
    parsed_args = argp.parse_args(args)

    # Pull passed arguments/options as a string for printing
    cmd_str = _construct_cmd_string(parsed_args, argp)

    masthead = f"""
    ***********************************************************************
    ************************** ngsLD {version} *******************************
    ***********************************************************************

    """

    if not parsed_args.quiet:
        sys.stdout.write(masthead)
        sys.stdout.write(cmd_str + os.linesep)

    _setup_logging(parsed_args.out, parsed_args.verbose)

    return _ld(
        parsed_args.geno,
        parsed_args.out,
        parsed_args.n_ind,
        parsed_args.n_sites,
        parsed_args.probs,
        parsed_args.log_scale,
        parsed_args.binary,
        parsed_args.pos,
        parsed_args.max_kb_dist,
        parsed_args.min_r2,
        parsed_args.call_geno,
        parsed_args.n_thresh,
        parsed_args.call_thresh,
        parsed_args.pearson,
        parsed_args.em_tol,
        parsed_args.em_max_iter,
        parsed_args.n_threads,
        parsed_args.name,
        parsed_args.verbose,
        parsed_args.quiet,
    )


def main():
    """Entry point for the ngsld command line interface."""
    try:
        status = _main(sys.argv[1:])
    except (ValueError, FileNotFoundError, RuntimeError) as e:
        sys.stderr.write(f"Error: {e}\n")
        sys.exit(1)
    sys.exit(status)


if __name__ == "__main__":
    main()
