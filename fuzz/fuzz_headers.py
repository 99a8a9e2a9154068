import io
import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from multipart_params.exceptions import FormParserError
    from multipart_params.multipart import (
        PushbackReader,
        parse_content_disposition,
        parse_content_type,
        read_part_headers,
    )
    from multipart_params.request import extract_boundary


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    parse_content_type(fdp.ConsumeRandomString())
    parse_content_disposition(fdp.ConsumeRandomString())

    try:
        extract_boundary(fdp.ConsumeRandomString())
    except FormParserError:
        pass

    max_size = fdp.ConsumeIntInRange(0, 1024)
    chunk_size = fdp.ConsumeIntInRange(1, 64)
    reader = PushbackReader(io.BytesIO(fdp.ConsumeRandomBytes()))
    try:
        read_part_headers(reader, "latin-1", max_size, chunk_size)
    except FormParserError:
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
