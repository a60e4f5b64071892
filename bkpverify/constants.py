# Record signatures (little-endian "PK" magics)
LOCAL_HEADER_SIG = b"PK\x03\x04"
CENTRAL_HEADER_SIG = b"PK\x01\x02"
END_RECORD_SIG = b"PK\x05\x06"
ZIP64_END_RECORD_SIG = b"PK\x06\x06"
ZIP64_LOCATOR_SIG = b"PK\x06\x07"
DATA_DESCRIPTOR_SIG = b"PK\x07\x08"

MAX_COMMENT_LEN = 0xFFFF
ZIP64_EXTRA_ID = 0x0001
ZIP64_SENTINEL_16 = 0xFFFF
ZIP64_SENTINEL_32 = 0xFFFFFFFF

# General purpose flag bits
GPF_ENCRYPTED = 1 << 0
GPF_LZMA_EOS = 1 << 1
GPF_DATA_DESCRIPTOR = 1 << 3
GPF_UTF8 = 1 << 11

# Compression methods with a payload decoder
METHOD_STORED = 0
METHOD_DEFLATED = 8
METHOD_BZIP2 = 12
METHOD_LZMA = 14

# Field offsets relative to the start of a central directory header
CD_CRC_FIELD = 16
CD_COMPRESSED_SIZE_FIELD = 20
CD_LOCAL_OFFSET_FIELD = 42

# Field offsets relative to the start of a local file header
LFH_CRC_FIELD = 14
LFH_COMPRESSED_SIZE_FIELD = 18


# Checksums and sidecars
DEFAULT_ALGORITHM = "sha256"
METADATA_DIR_NAME = ".metadata"
CHECKSUMS_SUFFIX = ".checksums.json"
STATUS_SUFFIX = ".status.json"
CHECKSUMS_FORMAT = "bkpverify.checksums"
STATUS_FORMAT = "bkpverify.status"
SIDECAR_VERSION = 1

DEFAULT_WORKERS = 1
READ_BLOCK_SIZE = 1_048_576  # 1 MiB

# Corruption defaults
DEFAULT_PAYLOAD_FLIP_LEN = 1
DEFAULT_ZERO_FILL_LEN = 16
# Draws allowed to find a payload position whose damage the verifier can see
MAX_PLACEMENT_ATTEMPTS = 64

# Largest LZMA dictionary a decoder is asked to allocate (liblzma's encoder maximum)
MAX_LZMA_DICT_SIZE = 1536 << 20
