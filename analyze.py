import argparse
import os
import subprocess
import sys

# --- Configuration ---
TOOLS_DIR = os.path.join(os.path.dirname(__file__), 'tools')
HPROF_CONVERTER = os.path.join(TOOLS_DIR, 'hprof_converter.py')

def check_files(file_paths):
    """Exits when any of the given HPROF files does not exist."""
    for file_path in file_paths:
        if not os.path.exists(file_path):
            print(f"Error: HPROF file not found at '{file_path}'")
            sys.exit(1)

def convert_hprof(file_paths, extra_args):
    """Calls the hprof converter script with --convert."""
    check_files(file_paths)
    print(f"--- Converting HPROF file(s): {', '.join(file_paths)} ---")
    command = [sys.executable, HPROF_CONVERTER, '--convert', *extra_args, *file_paths]
    subprocess.run(command, check=True)

def parse_hprof(file_paths, extra_args):
    """Calls the hprof converter script without writing output (parse and report only)."""
    check_files(file_paths)
    print(f"--- Parsing HPROF file(s): {', '.join(file_paths)} ---")
    command = [sys.executable, HPROF_CONVERTER, *extra_args, *file_paths]
    subprocess.run(command, check=True)

def main(argv=None):
    """Main function to parse arguments and dispatch commands."""
    parser = argparse.ArgumentParser(
        description="Binary HPROF to ASCII HPROF conversion front-end.",
        epilog="Examples:\n"
               "  python3 analyze.py convert dumps/heap.hprof\n"
               "  python3 analyze.py convert --dump-string dumps/heap.hprof\n"
               "  python3 analyze.py parse -v dumps/heap.hprof",
        formatter_class=argparse.RawTextHelpFormatter
    )

    subparsers = parser.add_subparsers(dest='command', required=True, help='Available commands')

    # convert command
    convert_parser = subparsers.add_parser('convert', help='Convert .hprof file(s) to <file>.txt.')
    convert_parser.add_argument('files', nargs='+', help='Path(s) to the .hprof file(s)')

    # parse command
    parse_parser = subparsers.add_parser('parse', help='Parse .hprof file(s) and print record statistics.')
    parse_parser.add_argument('files', nargs='+', help='Path(s) to the .hprof file(s)')

    args, extra_args = parser.parse_known_args(argv)

    if args.command == 'convert':
        convert_hprof(args.files, extra_args)
        print("\n--- Conversion complete. ---")
    elif args.command == 'parse':
        parse_hprof(args.files, extra_args)
        print("\n--- Parsing complete. ---")

if __name__ == '__main__':
    try:
        main()
    except subprocess.CalledProcessError as e:
        print(f"An error occurred while running the converter script: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"An unexpected error occurred: {e}", file=sys.stderr)
        sys.exit(1)
