# argparser.py
import argparse


def build_parser():
    parser = argparse.ArgumentParser(prog="minish", description="A small interactive shell.")
    parser.add_argument("script", nargs="?",
                        help="run the lines of this file instead of reading commands")
    parser.add_argument("--no-line-editor", dest="line_editor", action="store_false",
                        help="read plain lines even when stdin is a terminal")
    parser.add_argument("--debug", action="store_true",
                        help="log process and terminal activity to stderr")
    return parser
