import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path

from . import __version__, keymanager, library, sources
from .config import Settings
from .errors import ConfigurationError, KeysealError
from .fingerprint import Mode, TerminalPassphrasePrompt, fingerprint_of, load_identity
from .workspace import Workspace, cleanup_on_signals

COMMANDS = ("encrypt", "decrypt", "inspect", "fingerprint", "keygen")
# Options whose value is the next token.
VALUE_OPTIONS = (
    "-u", "--user", "-g", "--group", "-k", "--key", "-i", "--input",
    "--keys-dir", "--directory-url", "--bits",
)
DEFAULT_PRIVATE_KEY = Path("~/.ssh/id_rsa")

logger = logging.getLogger("keyseal")


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _settings(args) -> Settings:
    settings = Settings.from_env()
    overrides = {}
    if args.keys_dir:
        overrides["keys_dir"] = Path(args.keys_dir)
    if args.directory_url:
        overrides["directory_url"] = args.directory_url
    return dataclasses.replace(settings, **overrides) if overrides else settings


def _read_input(path):
    if not path or path == "-":
        return sys.stdin.buffer.read()
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        raise ConfigurationError(f"cannot read input {path}: {exc}") from exc


def cmd_encrypt(args, settings: Settings):
    entries, required = sources.collect_entries(
        users=args.user or (),
        groups=args.group or (),
        key_files=args.key or (),
        settings=settings,
    )
    payload = _read_input(args.input)
    with Workspace(parent=settings.tmpdir) as workspace:
        armored = library.encrypt(
            payload,
            entries,
            name=args.input,
            required=required,
            workspace=workspace,
            max_workers=settings.workers,
        )
    sys.stdout.write(armored)
    sys.stdout.flush()


def cmd_decrypt(args, settings: Settings):
    if args.user or args.group:
        raise ConfigurationError("recipients (-u/-g) cannot be combined with decrypt")
    key_path = Path(args.key).expanduser() if args.key else DEFAULT_PRIVATE_KEY.expanduser()
    identity = load_identity(key_path, prompt=TerminalPassphrasePrompt())
    armored = _read_input(args.input)
    with Workspace(parent=settings.tmpdir) as workspace:
        plaintext = library.decrypt(armored, identity, expert=args.expert, workspace=workspace)
    sys.stdout.buffer.write(plaintext)
    sys.stdout.flush()


def cmd_inspect(args, settings: Settings):
    print(json.dumps(library.inspect(_read_input(args.input)), indent=2))


def cmd_fingerprint(args, settings: Settings):
    path = Path(args.keyfile)
    try:
        material = path.read_bytes()
    except OSError as exc:
        raise ConfigurationError(f"cannot read key file {path}: {exc}") from exc
    result = fingerprint_of(material, Mode.DECRYPTION, prompt=TerminalPassphrasePrompt(), description=str(path))
    if not result.ok:
        raise ConfigurationError(f"cannot fingerprint {path}: {result.detail or result.status.value}")
    print(result.fingerprint)


def cmd_keygen(args, settings: Settings):
    passphrase = None
    if args.passphrase:
        passphrase = TerminalPassphrasePrompt()(f"new key {args.name}") or None
    data = keymanager.generate_keypair(args.name, base_dir=settings.keys_dir, bits=args.bits, passphrase=passphrase)
    print(f"Generated keys for {data['name']} in {settings.keys_dir} (fingerprint {data['fingerprint']})")


def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-v", "--verbose", action="count", default=0, help="More logging (repeatable)")
    common.add_argument("--keys-dir", help="Directory holding <name>.pub / <name>.key files")
    common.add_argument("--directory-url", help="Base URL of the key directory service")
    return common


def build_parser():
    common = _common_options()
    parser = argparse.ArgumentParser(prog="keyseal", description="Multi-recipient file encryption")
    parser.add_argument("--version", action="version", version=f"keyseal {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    p_enc = sub.add_parser("encrypt", parents=[common], help="Encrypt for recipients (default)")
    p_enc.add_argument("-u", "--user", action="append", help="Recipient user name")
    p_enc.add_argument("-g", "--group", action="append", help="Recipient group name")
    p_enc.add_argument("-k", "--key", action="append", help="Recipient public key file")
    p_enc.add_argument("-i", "--input", help="Input file (default: standard input)")
    p_enc.set_defaults(func=cmd_encrypt)

    p_dec = sub.add_parser("decrypt", parents=[common], help="Decrypt with a private key")
    p_dec.add_argument("-k", "--key", help=f"Private key file (default: {DEFAULT_PRIVATE_KEY})")
    p_dec.add_argument("-i", "--input", help="Envelope file (default: standard input)")
    p_dec.add_argument("--expert", action="store_true", help="Skip the version compatibility check")
    p_dec.add_argument("-u", "--user", action="append", help=argparse.SUPPRESS)
    p_dec.add_argument("-g", "--group", action="append", help=argparse.SUPPRESS)
    p_dec.set_defaults(func=cmd_decrypt)

    p_ins = sub.add_parser("inspect", parents=[common], help="Show the recipients and version of an envelope")
    p_ins.add_argument("-i", "--input", help="Envelope file (default: standard input)")
    p_ins.set_defaults(func=cmd_inspect)

    p_fp = sub.add_parser("fingerprint", parents=[common], help="Print the fingerprint of a key")
    p_fp.add_argument("keyfile")
    p_fp.set_defaults(func=cmd_fingerprint)

    p_gen = sub.add_parser("keygen", parents=[common], help="Generate an RSA key pair in the keys dir")
    p_gen.add_argument("name")
    p_gen.add_argument("--bits", type=int, default=2048)
    p_gen.add_argument("--passphrase", action="store_true", help="Encrypt the private key (asks on the terminal)")
    p_gen.set_defaults(func=cmd_keygen)

    return parser


def _with_command(argv):
    """Move the subcommand to the front, or make ``encrypt`` the command."""
    skip = False
    for index, token in enumerate(argv):
        if skip:
            skip = False
            continue
        if token == "--":
            break
        if token.startswith("-"):
            skip = token in VALUE_OPTIONS
            continue
        if token in COMMANDS:
            return [token] + argv[:index] + argv[index + 1:]
        break
    if argv and argv[0] in ("-h", "--help", "--version"):
        return argv
    return ["encrypt"] + argv


def main(argv=None):
    argv = list(sys.argv[1:] if argv is None else argv)
    argv = _with_command(argv)
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    try:
        with cleanup_on_signals():
            args.func(args, _settings(args))
    except KeysealError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:  # pylint: disable=broad-except
        logger.debug("Unexpected failure", exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
