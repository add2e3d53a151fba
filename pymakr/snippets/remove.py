import os
def __pymakr_rm(path, recursive):
    if os.stat(path)[0] & 0x4000:
        if recursive:
            for entry in os.ilistdir(path):
                __pymakr_rm(path.rstrip("/") + "/" + entry[0], True)
        os.rmdir(path)
    else:
        os.remove(path)
