from __future__ import annotations

IMAGE_DOS_SIGNATURE = b"MZ"
IMAGE_NT_SIGNATURE = b"PE\x00\x00"

PE32_MAGIC = 0x10B
PE32P_MAGIC = 0x20B
ROM_MAGIC = 0x107

IMAGE_NUMBEROF_DIRECTORY_ENTRIES = 16

# Data directory indices
DIR_EXPORT = 0
DIR_IMPORT = 1
DIR_RESOURCE = 2
DIR_EXCEPTION = 3
DIR_SECURITY = 4
DIR_BASERELOC = 5
DIR_DEBUG = 6
DIR_ARCHITECTURE = 7
DIR_GLOBALPTR = 8
DIR_TLS = 9
DIR_LOAD_CONFIG = 10
DIR_BOUND_IMPORT = 11
DIR_IAT = 12
DIR_DELAY_IMPORT = 13
DIR_COM_DESCRIPTOR = 14

# Resource types
RT_CURSOR = 1
RT_BITMAP = 2
RT_ICON = 3
RT_MENU = 4
RT_DIALOG = 5
RT_STRING = 6
RT_FONTDIR = 7
RT_FONT = 8
RT_ACCELERATOR = 9
RT_RCDATA = 10
RT_MESSAGETABLE = 11
RT_GROUP_CURSOR = 12
RT_GROUP_ICON = 14
RT_VERSION = 16
RT_DLGINCLUDE = 17
RT_PLUGPLAY = 19
RT_VXD = 20
RT_ANICURSOR = 21
RT_ANIICON = 22
RT_HTML = 23
RT_MANIFEST = 24

# Certificate table
WIN_CERT_REVISION_1_0 = 0x0100
WIN_CERT_REVISION_2_0 = 0x0200
WIN_CERT_TYPE_X509 = 0x0001
WIN_CERT_TYPE_PKCS_SIGNED_DATA = 0x0002
WIN_CERT_TYPE_TS_STACK_SIGNED = 0x0004

IMAGE_DEBUG_TYPE_CODEVIEW = 2

MACHINES_64BIT = frozenset({0x8664, 0xAA64, 0x200, 0x5064, 0x6264})


class PEConstants:
    """
    Named integer constants exposed to rule authors (pe.DLL, pe.MACHINE_AMD64...).
    """

    MACHINE_UNKNOWN = 0x0
    MACHINE_AM33 = 0x1D3
    MACHINE_AMD64 = 0x8664
    MACHINE_ARM = 0x1C0
    MACHINE_ARMNT = 0x1C4
    MACHINE_ARM64 = 0xAA64
    MACHINE_EBC = 0xEBC
    MACHINE_I386 = 0x14C
    MACHINE_IA64 = 0x200
    MACHINE_LOONGARCH32 = 0x6232
    MACHINE_LOONGARCH64 = 0x6264
    MACHINE_M32R = 0x9041
    MACHINE_MIPS16 = 0x266
    MACHINE_MIPSFPU = 0x366
    MACHINE_MIPSFPU16 = 0x466
    MACHINE_POWERPC = 0x1F0
    MACHINE_POWERPCFP = 0x1F1
    MACHINE_R4000 = 0x166
    MACHINE_RISCV32 = 0x5032
    MACHINE_RISCV64 = 0x5064
    MACHINE_SH3 = 0x1A2
    MACHINE_SH3DSP = 0x1A3
    MACHINE_SH4 = 0x1A6
    MACHINE_SH5 = 0x1A8
    MACHINE_THUMB = 0x1C2
    MACHINE_WCEMIPSV2 = 0x169

    SUBSYSTEM_UNKNOWN = 0
    SUBSYSTEM_NATIVE = 1
    SUBSYSTEM_WINDOWS_GUI = 2
    SUBSYSTEM_WINDOWS_CUI = 3
    SUBSYSTEM_OS2_CUI = 5
    SUBSYSTEM_POSIX_CUI = 7
    SUBSYSTEM_NATIVE_WINDOWS = 8
    SUBSYSTEM_WINDOWS_CE_GUI = 9
    SUBSYSTEM_EFI_APPLICATION = 10
    SUBSYSTEM_EFI_BOOT_SERVICE_DRIVER = 11
    SUBSYSTEM_EFI_RUNTIME_DRIVER = 12
    SUBSYSTEM_EFI_ROM_IMAGE = 13
    SUBSYSTEM_XBOX = 14
    SUBSYSTEM_WINDOWS_BOOT_APPLICATION = 16

    # COFF file characteristics
    RELOCS_STRIPPED = 0x0001
    EXECUTABLE_IMAGE = 0x0002
    LINE_NUMS_STRIPPED = 0x0004
    LOCAL_SYMS_STRIPPED = 0x0008
    AGGRESIVE_WS_TRIM = 0x0010
    LARGE_ADDRESS_AWARE = 0x0020
    BYTES_REVERSED_LO = 0x0080
    MACHINE_32BIT = 0x0100
    DEBUG_STRIPPED = 0x0200
    REMOVABLE_RUN_FROM_SWAP = 0x0400
    NET_RUN_FROM_SWAP = 0x0800
    SYSTEM = 0x1000
    DLL = 0x2000
    UP_SYSTEM_ONLY = 0x4000
    BYTES_REVERSED_HI = 0x8000

    # Optional header DLL characteristics
    HIGH_ENTROPY_VA = 0x0020
    DYNAMIC_BASE = 0x0040
    FORCE_INTEGRITY = 0x0080
    NX_COMPAT = 0x0100
    NO_ISOLATION = 0x0200
    NO_SEH = 0x0400
    NO_BIND = 0x0800
    APPCONTAINER = 0x1000
    WDM_DRIVER = 0x2000
    GUARD_CF = 0x4000
    TERMINAL_SERVER_AWARE = 0x8000

    # Section characteristics
    SECTION_CNT_CODE = 0x00000020
    SECTION_CNT_INITIALIZED_DATA = 0x00000040
    SECTION_CNT_UNINITIALIZED_DATA = 0x00000080
    SECTION_LNK_INFO = 0x00000200
    SECTION_LNK_REMOVE = 0x00000800
    SECTION_LNK_COMDAT = 0x00001000
    SECTION_GPREL = 0x00008000
    SECTION_LNK_NRELOC_OVFL = 0x01000000
    SECTION_MEM_DISCARDABLE = 0x02000000
    SECTION_MEM_NOT_CACHED = 0x04000000
    SECTION_MEM_NOT_PAGED = 0x08000000
    SECTION_MEM_SHARED = 0x10000000
    SECTION_MEM_EXECUTE = 0x20000000
    SECTION_MEM_READ = 0x40000000
    SECTION_MEM_WRITE = 0x80000000

    IMAGE_DIRECTORY_ENTRY_EXPORT = DIR_EXPORT
    IMAGE_DIRECTORY_ENTRY_IMPORT = DIR_IMPORT
    IMAGE_DIRECTORY_ENTRY_RESOURCE = DIR_RESOURCE
    IMAGE_DIRECTORY_ENTRY_EXCEPTION = DIR_EXCEPTION
    IMAGE_DIRECTORY_ENTRY_SECURITY = DIR_SECURITY
    IMAGE_DIRECTORY_ENTRY_BASERELOC = DIR_BASERELOC
    IMAGE_DIRECTORY_ENTRY_DEBUG = DIR_DEBUG
    IMAGE_DIRECTORY_ENTRY_ARCHITECTURE = DIR_ARCHITECTURE
    IMAGE_DIRECTORY_ENTRY_GLOBALPTR = DIR_GLOBALPTR
    IMAGE_DIRECTORY_ENTRY_TLS = DIR_TLS
    IMAGE_DIRECTORY_ENTRY_LOAD_CONFIG = DIR_LOAD_CONFIG
    IMAGE_DIRECTORY_ENTRY_BOUND_IMPORT = DIR_BOUND_IMPORT
    IMAGE_DIRECTORY_ENTRY_IAT = DIR_IAT
    IMAGE_DIRECTORY_ENTRY_DELAY_IMPORT = DIR_DELAY_IMPORT
    IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR = DIR_COM_DESCRIPTOR

    RESOURCE_TYPE_CURSOR = RT_CURSOR
    RESOURCE_TYPE_BITMAP = RT_BITMAP
    RESOURCE_TYPE_ICON = RT_ICON
    RESOURCE_TYPE_MENU = RT_MENU
    RESOURCE_TYPE_DIALOG = RT_DIALOG
    RESOURCE_TYPE_STRING = RT_STRING
    RESOURCE_TYPE_FONTDIR = RT_FONTDIR
    RESOURCE_TYPE_FONT = RT_FONT
    RESOURCE_TYPE_ACCELERATOR = RT_ACCELERATOR
    RESOURCE_TYPE_RCDATA = RT_RCDATA
    RESOURCE_TYPE_MESSAGETABLE = RT_MESSAGETABLE
    RESOURCE_TYPE_GROUP_CURSOR = RT_GROUP_CURSOR
    RESOURCE_TYPE_GROUP_ICON = RT_GROUP_ICON
    RESOURCE_TYPE_VERSION = RT_VERSION
    RESOURCE_TYPE_DLGINCLUDE = RT_DLGINCLUDE
    RESOURCE_TYPE_PLUGPLAY = RT_PLUGPLAY
    RESOURCE_TYPE_VXD = RT_VXD
    RESOURCE_TYPE_ANICURSOR = RT_ANICURSOR
    RESOURCE_TYPE_ANIICON = RT_ANIICON
    RESOURCE_TYPE_HTML = RT_HTML
    RESOURCE_TYPE_MANIFEST = RT_MANIFEST


MACHINE_NAMES = {
    v: k[len("MACHINE_"):] for k, v in vars(PEConstants).items() if k.startswith("MACHINE_") and k != "MACHINE_32BIT"
}

SUBSYSTEM_NAMES = {
    v: k[len("SUBSYSTEM_"):] for k, v in vars(PEConstants).items() if k.startswith("SUBSYSTEM_")
}
