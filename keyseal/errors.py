"""Exception hierarchy shared by every keyseal component."""


class KeysealError(Exception):
    """Base class for fatal keyseal conditions."""


class ConfigurationError(KeysealError):
    """Bad invocation: missing recipients, conflicting flags, unreadable key files."""


class KeyMaterialError(KeysealError):
    pass


class NoUsableKeyMaterial(KeyMaterialError):
    pass


class FormatError(KeysealError):
    """The envelope could not be parsed."""


class CompatibilityError(KeysealError):
    pass


class CryptoError(KeysealError):
    pass


class NotEncryptedForKey(CryptoError):
    def __init__(self, fingerprint: str):
        super().__init__(f"not encrypted for this key ({fingerprint})")
        self.fingerprint = fingerprint


class PassphraseError(CryptoError):
    def __init__(self, detail: str = "could not use the private key"):
        super().__init__(f"{detail}; verify the passphrase of your private key")


class PassphraseUnavailable(CryptoError):
    pass
