import hmac
from typing import Union


class Signature:
    def __init__(self, secret: Union[str, bytes], digestmod: str = "sha1"):
        if isinstance(secret, str):
            secret = secret.encode()
        self.secret = secret
        self.digestmod = digestmod

    def create(self, payload: Union[str, bytes]) -> str:
        """Create a signature for the given payload."""
        if isinstance(payload, str):
            payload = payload.encode()
        return hmac.new(
            self.secret,
            payload,
            digestmod=self.digestmod,
        ).hexdigest()

    def header(self, payload: Union[str, bytes]) -> str:
        """Signature in the ``<digest>=<hex>`` form used by the gateway."""
        return f"{self.digestmod}={self.create(payload)}"

    def verify(self, payload: Union[str, bytes], signature: str) -> bool:
        """Verify that the signature matches the payload."""
        prefix = f"{self.digestmod}="
        if signature.startswith(prefix):
            signature = signature[len(prefix) :]
        return hmac.compare_digest(self.create(payload), signature)
