# test_imports.py
import sys
print("Python path:", sys.path)

try:
    import cipher_coder
    print("✅ cipher_coder imported successfully")
    print("Module location:", cipher_coder.__path__)
except ImportError as e:
    print("❌ Failed to import cipher_coder:", e)

try:
    from cipher_coder.sdk.service import CodeGenService
    print("✅ CodeGenService imported successfully")
except ImportError as e:
    print("❌ Failed to import CodeGenService:", e)
