#!/usr/bin/env python3
"""
Nara CLI - Command Line Interface for the audiobook copilot
"""
import argparse
import json
import logging
import os
import sys

from . import config as CFG
from .error_handler import ContentUnavailable, NaraException


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nara",
        description="Nara - spoiler-safe voice copilot for audiobooks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  nara voice --book zero_to_one                    # Listen for "hey nara"
  nara ask --book zero_to_one --chapter 1 "What does the author mean by zero to one?"
  nara serve                                       # Control server only
        """
    )
    parser.add_argument('--config', help='Path to configuration file')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')

    sub = parser.add_subparsers(dest='command', required=True)

    voice = sub.add_parser('voice', help='Run the voice copilot')
    voice.add_argument('--book', help='Audiobook id (dataset file name without .json)')

    ask = sub.add_parser('ask', help='Ask one text question')
    ask.add_argument('question', help='Question text')
    ask.add_argument('--book', help='Audiobook id')
    ask.add_argument('--chapter', type=int, default=0, help='Chapter currently playing')
    ask.add_argument('--progress', type=int, help='Furthest chapter reached (defaults to --chapter)')
    ask.add_argument('--mode', choices=['auto', 'full', 'compressed', 'focused'], help='Packing mode hint')
    ask.add_argument('--json', action='store_true', help='Print the full result as JSON')

    serve = sub.add_parser('serve', help='Run the control server without audio')
    serve.add_argument('--book', help='Audiobook id')
    return parser


def _ask(args) -> int:
    from .models import AnswerResult, PlaybackContext
    from .voice_assistant import VoiceCopilot

    copilot = VoiceCopilot.build_from_config(args.book, audio=False)
    base = copilot.context.get()
    progress = args.progress if args.progress is not None else args.chapter
    context = PlaybackContext(
        audiobook_id=base.audiobook_id,
        playback_chapter_index=args.chapter,
        listener_progress_chapter_index=progress,
    )
    try:
        result = copilot.pipeline.ask(args.question, context, mode_hint=args.mode)
    except ContentUnavailable as e:
        logging.getLogger("nara.cli").warning(f"Content unavailable: {e}")
        result = AnswerResult(markdown=CFG.get_fallback_answer(), fallback=True)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(result.markdown)
        if result.citations:
            print("\nCitations: " + ", ".join(c.ref for c in result.citations))
        if result.playback_hint:
            print(f"Jump to: chapter {result.playback_hint.chapter_index} "
                  f"at {result.playback_hint.start_seconds:.0f}s")
    return 0


def _serve(args) -> int:
    from .voice_assistant import VoiceCopilot, create_control_app

    copilot = VoiceCopilot.build_from_config(args.book, audio=False)
    copilot.orchestrator.start()
    host, port = CFG.get_control_host_port()
    try:
        create_control_app(copilot).run(host=host, port=port, debug=False, use_reloader=False)
    finally:
        copilot.orchestrator.stop()
    return 0


def main(argv=None) -> int:
    """Main CLI entry point"""
    args = _build_parser().parse_args(argv)

    if args.debug:
        os.environ['DEBUG'] = '1'
        logging.getLogger("nara").setLevel(logging.DEBUG)
    if args.config:
        CFG.set_config_path(args.config)

    try:
        if args.command == 'voice':
            from .voice_assistant import main as voice_main
            voice_main(args.book)
            return 0
        if args.command == 'ask':
            return _ask(args)
        return _serve(args)
    except NaraException as e:
        print(f"Error ({e.component}): {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0


if __name__ == '__main__':
    sys.exit(main())
