import os
def __pymakr_ls(path, recursive, fingerprint):
    out = []
    buf = memoryview(bytearray(256)) if fingerprint else None
    def walk(p):
        for entry in os.ilistdir(p):
            full = p.rstrip("/") + "/" + entry[0]
            is_dir = entry[1] & 0x4000 != 0
            if is_dir:
                out.append((full, True, 0, None))
                if recursive:
                    walk(full)
            else:
                size = entry[3] if len(entry) > 3 else os.stat(full)[6]
                out.append((full, False, size, __pymakr_hf(full, buf) if fingerprint else None))
    walk(path)
    return out
