import io
import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from multipart_params.exceptions import FormParserError
    from multipart_params.multipart import parse_multipart
    from multipart_params.request import multipart_params_request
    from multipart_params.stores import MemoryStore

store = MemoryStore()


def parse_random_body(fdp: EnhancedDataProvider) -> None:
    boundary = fdp.ConsumeBoundary()
    chunk_size = fdp.ConsumeIntInRange(1, 64)
    parse_multipart(io.BytesIO(fdp.ConsumeRandomBytes()), boundary, store=store, config={"CHUNK_SIZE": chunk_size})


def parse_framed_part(fdp: EnhancedDataProvider) -> None:
    boundary = "boundary"
    filename = '; filename="upload.bin"' if fdp.ConsumeBool() else ""
    body = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="field"{filename}\r\n'
        f"Content-Type: text/plain; charset=utf-8\r\n\r\n"
        f"{fdp.ConsumeRandomString()}\r\n"
        f"--{boundary}--\r\n"
    )
    chunk_size = fdp.ConsumeIntInRange(1, 64)
    parse_multipart(
        io.BytesIO(body.encode("latin1", errors="ignore")),
        boundary,
        store=store,
        config={"CHUNK_SIZE": chunk_size},
    )


def parse_request(fdp: EnhancedDataProvider) -> None:
    request = {
        "content_type": fdp.ConsumeRandomString(),
        "body": io.BytesIO(fdp.ConsumeRandomBytes()),
    }
    multipart_params_request(request, store=store)


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    targets = [parse_random_body, parse_framed_part, parse_request]
    target = fdp.PickValueInList(targets)

    try:
        target(fdp)
    except FormParserError:
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
