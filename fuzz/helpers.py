import atheris


class EnhancedDataProvider(atheris.FuzzedDataProvider):
    def ConsumeRandomBytes(self) -> bytes:
        return self.ConsumeBytes(self.ConsumeIntInRange(0, self.remaining_bytes()))

    def ConsumeRandomString(self) -> str:
        return self.ConsumeUnicodeNoSurrogates(self.ConsumeIntInRange(0, self.remaining_bytes()))

    def ConsumeBoundary(self) -> str:
        # Boundaries are 1 to 70 printable characters.
        boundary = self.ConsumeUnicodeNoSurrogates(self.ConsumeIntInRange(1, 70))
        return boundary.encode("ascii", errors="ignore").decode("ascii") or "boundary"
